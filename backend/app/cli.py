import argparse
import os
import sys
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.engine import make_url

from backend.app.core.config import VERSION, Settings, load_settings, write_default_config

DEFAULT_CONFIG_PATH = ".env"


def _display_store_url(app_settings: Settings) -> str:
    if app_settings.METADATA_STORE_TYPE == "postgresql":
        return make_url(app_settings.METADATA_STORE_URL).render_as_string(hide_password=True)
    return app_settings.METADATA_STORE_URL


def cmd_serve(args, app_settings: Settings) -> int:
    import uvicorn

    from backend.app.main import create_app

    host = args.host or app_settings.SERVER_HOST
    port = args.port or app_settings.SERVER_PORT
    if args.verbose:
        app_settings.LOG_LEVEL = "debug"
    # Logging is configured by the app itself on startup
    uvicorn.run(create_app(app_settings), host=host, port=port, log_config=None)
    return 0


def cmd_config_init(args, app_settings: Settings) -> int:
    path = args.path or DEFAULT_CONFIG_PATH
    if os.path.exists(path):
        print(f"Config file already exists: {path}", file=sys.stderr)
        return 1
    write_default_config(path)
    print(f"Wrote default config to {path}")
    return 0


def cmd_config_show(args, app_settings: Settings) -> int:
    for name in Settings.model_fields:
        value = getattr(app_settings, name)
        if name == "METADATA_STORE_URL":
            value = _display_store_url(app_settings)
        print(f"{name}={value}")
    return 0


def cmd_plugins(args, app_settings: Settings) -> int:
    from backend.app.services.datasource_service import BUILTIN_PLUGINS

    for plugin_class in BUILTIN_PLUGINS:
        print(f"{plugin_class.data_source_type.value}\t{plugin_class.display_name}")
    return 0


def cmd_version(args, app_settings: Settings) -> int:
    print(f"data-voyager {VERSION}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="data-voyager", description="Datasource connection management server")
    parser.add_argument("--config", help="Path to an env file with settings")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", help="Bind address (default: SERVER_HOST)")
    serve.add_argument("--port", type=int, help="Bind port (default: SERVER_PORT)")
    serve.set_defaults(func=cmd_serve)

    config = subparsers.add_parser("config", help="Manage configuration")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    init = config_sub.add_parser("init", help="Write a default config file")
    init.add_argument("path", nargs="?", help=f"Target file (default: {DEFAULT_CONFIG_PATH})")
    init.set_defaults(func=cmd_config_init)
    show = config_sub.add_parser("show", help="Print the effective configuration")
    show.set_defaults(func=cmd_config_show)

    plugins = subparsers.add_parser("plugins", help="List supported datasource types")
    plugins.set_defaults(func=cmd_plugins)

    version = subparsers.add_parser("version", help="Print the version")
    version.set_defaults(func=cmd_version)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        app_settings = load_settings(args.config)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    return args.func(args, app_settings)


if __name__ == "__main__":
    sys.exit(main())
