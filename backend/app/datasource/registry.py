from typing import Dict, List, Optional

from backend.app.datasource.base import Plugin
from backend.app.models.connection_config import DataSourceType


class Registry:
    """
    Datasource type -> Plugin lookup.

    Populated once at startup and only read afterwards, so it carries no lock.
    """

    def __init__(self):
        self._plugins: Dict[DataSourceType, Plugin] = {}

    def register(self, plugin: Plugin) -> None:
        self._plugins[DataSourceType(plugin.get_type())] = plugin

    def get(self, ds_type) -> Optional[Plugin]:
        try:
            return self._plugins.get(DataSourceType(ds_type))
        except ValueError:
            return None

    def list(self) -> Dict[DataSourceType, Plugin]:
        return dict(self._plugins)

    def get_supported_types(self) -> List[DataSourceType]:
        return list(self._plugins.keys())
