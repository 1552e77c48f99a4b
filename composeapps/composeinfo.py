"""Reads services and their properties from a docker-compose file."""

from __future__ import annotations

import os
from typing import Any, List, Union

import yaml


def _as_string(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ComposeInfo:
    """Parsed content of a compose file."""

    def __init__(self, path: Union[str, os.PathLike]):
        with open(path, encoding="utf-8") as stream:
            document = yaml.safe_load(stream)
        self._root = document if isinstance(document, dict) else {}

    def _services(self) -> dict:
        services = self._root.get("services")
        return services if isinstance(services, dict) else {}

    def _service(self, service: str) -> dict:
        entry = self._services().get(service)
        return entry if isinstance(entry, dict) else {}

    def services(self) -> List[str]:
        """Names of the services defined in the file, in sorted order."""
        return sorted(str(name) for name in self._services())

    def image(self, service: str) -> str:
        return _as_string(self._service(service).get("image"))

    def hash(self, service: str) -> str:
        labels = self._service(service).get("labels")
        if not isinstance(labels, dict):
            return ""
        return _as_string(labels.get("io.compose-spec.config-hash"))