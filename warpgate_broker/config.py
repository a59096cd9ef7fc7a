"""Persisted configuration for the Warpgate session broker.

The broker never owns its configuration. It reads and mutates a document held
by a config store and asks the store to persist it. Server entries are
mutated in place inside the store's live ``servers`` list; the list itself is
never rebuilt or replaced, so a change to one entry cannot discard changes
made to another.

Key Features:
- ``ConfigStore`` protocol describing the store contract
- Defaults for every plugin setting, filled in without overwriting
- ``YamlConfigStore`` persisting the document to a YAML file
- ``MemoryConfigStore`` for embedding and tests

Document Format:

    ```yaml
    servers:
      - id: wg-1767225600000-k3j9x0a2q
        name: Production
        url: https://warpgate.example.com
        username: alice
        password: s3cret
        enabled: true
        otp_secret: JBSWY3DPEHPK3PXP
    auto_refresh_interval: 60
    auth_method: auto
    debug_mode: false
    request_timeout: 30
    pinned_hosts: []
    ```
"""

import copy
import logging
import os
import tempfile
from typing import Any, Dict, Optional, Protocol

import yaml

logger = logging.getLogger("warpgate_broker.config")

DEFAULT_CONFIG_PATH = "~/.config/warpgate-broker/config.yml"
CONFIG_PATH_ENV = "WARPGATE_BROKER_CONFIG"

AUTH_METHOD_TICKET = "ticket"
AUTH_METHOD_PASSWORD = "password"
AUTH_METHOD_AUTO = "auto"

DEFAULT_CONFIG: Dict[str, Any] = {
    "servers": [],
    "auto_refresh_interval": 60,
    "auth_method": AUTH_METHOD_AUTO,
    "debug_mode": False,
    "request_timeout": 30,
    "pinned_hosts": [],
}


class ConfigStore(Protocol):
    """Contract of the persisted configuration collaborator.

    ``get`` returns the live document; mutations made to it (including to
    its ``servers`` list) are what ``save`` persists. ``set`` merges
    top-level keys into the live document.
    """

    def get(self) -> Dict[str, Any]: ...

    def set(self, partial: Dict[str, Any]) -> None: ...

    def save(self) -> None: ...


def apply_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill missing settings with defaults, in place.

    Existing values, including an existing ``servers`` list, are kept as
    they are. Returns the same dict for convenience.
    """
    for key, value in DEFAULT_CONFIG.items():
        if key not in data or data[key] is None:
            data[key] = copy.deepcopy(value)
    return data


def default_config_path() -> str:
    """Return the config path from the environment or the default location."""
    return os.path.expanduser(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


class MemoryConfigStore:
    """Config store holding the document in memory.

    ``save`` is a hook for embedders; it records how many times it ran.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data = apply_defaults(data if data is not None else {})
        self.save_count = 0

    def get(self) -> Dict[str, Any]:
        return self._data

    def set(self, partial: Dict[str, Any]) -> None:
        self._data.update(partial)

    def save(self) -> None:
        self.save_count += 1


class YamlConfigStore:
    """Config store backed by a YAML file.

    The file is read once when the store is created. A missing or empty file
    yields the default document. ``save`` writes the whole document to a
    temporary file next to the target and renames it into place.

    Args:
        path: Path to the YAML file. ``~`` is expanded.

    Raises:
        yaml.YAMLError: If the existing file is not valid YAML.
        ValueError: If the file does not contain a mapping.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(os.path.expanduser(path))
        self._data = apply_defaults(self._load())

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            logger.debug(f"no config at {self.path=}, using defaults")
            return {}
        with open(self.path) as f:
            data = yaml.safe_load(f.read())
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {self.path} must contain a mapping")
        return data

    def get(self) -> Dict[str, Any]:
        return self._data

    def set(self, partial: Dict[str, Any]) -> None:
        self._data.update(partial)

    def save(self) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".yml", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(self._data, f, default_flow_style=False, sort_keys=False)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"saved config to {self.path=}")
