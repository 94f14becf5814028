"""The input directory that ansible-runner reads for a run."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_log = logging.getLogger(__name__)

_JSON_ESCAPES = {
    ord("<"): "\\u003c",
    ord(">"): "\\u003e",
    ord("&"): "\\u0026",
    0x2028: "\\u2028",
    0x2029: "\\u2029",
}


def _marshal(value: Any) -> bytes:
    """Compact JSON with sorted keys and HTML-safe escaping."""
    text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.translate(_JSON_ESCAPES).encode("utf-8")


def _copy_file(src: str, dst: str) -> None:
    shutil.copyfile(src, dst)
    os.chmod(dst, stat.S_IMODE(os.stat(src).st_mode))


def _copy_inventory(src: str, dst: str) -> None:
    """Copy a file or directory tree from src to dst, keeping permissions."""
    if not os.path.isdir(src):
        _copy_file(src, dst)
        return
    for dirpath, _dirnames, filenames in os.walk(src):
        target = dirpath.replace(src, dst, 1)
        os.makedirs(target, mode=stat.S_IMODE(os.stat(dirpath).st_mode), exist_ok=True)
        for name in filenames:
            _copy_file(os.path.join(dirpath, name), os.path.join(target, name))


@dataclass
class InputDir:
    """Contents of an ansible-runner input directory rooted at ``path``."""

    path: str | os.PathLike[str]
    playbook_path: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    env_vars: dict[str, str] = field(default_factory=dict)
    settings: dict[str, str] = field(default_factory=dict)
    cmdline: str = ""

    @property
    def _root(self) -> Path:
        return Path(self.path)

    def _add_file(self, relative: str, content: bytes) -> None:
        full_path = self._root / relative
        try:
            full_path.write_bytes(content)
        except OSError:
            _log.error("Unable to write file %s", full_path)
            raise

    def stdout(self, ident: str) -> str:
        """Return the stdout artifact of the run with the given ident."""
        return (self._root / "artifacts" / ident / "stdout").read_text(
            encoding="utf-8", errors="replace"
        )

    def write(self) -> None:
        """Write the directory to disk."""
        param_bytes = _marshal(self.parameters)
        env_var_bytes = _marshal(self.env_vars)
        settings_bytes = _marshal(self.settings)

        for sub in ("env", "project", "inventory"):
            (self._root / sub).mkdir(parents=True, exist_ok=True)

        self._add_file("env/envvars", env_var_bytes)
        self._add_file("env/extravars", param_bytes)
        self._add_file("env/settings", settings_bytes)

        if self.cmdline.startswith("'") and self.cmdline[0] == self.cmdline[-1]:
            self.cmdline = self.cmdline[1:-1]
        if self.cmdline:
            self._add_file("env/cmdline", self.cmdline.encode("utf-8"))

        # A configured ANSIBLE_INVENTORY replaces the generated hosts file.
        inventory = os.environ.get("ANSIBLE_INVENTORY", "")
        if not inventory:
            venv = os.environ.get("VIRTUAL_ENV", "")
            interpreter = (
                os.path.join(venv, "bin", "python3") if venv else "{{ansible_playbook_python}}"
            )
            hosts = (
                "localhost ansible_connection=local "
                f"ansible_python_interpreter={interpreter}"
            )
            self._add_file("inventory/hosts", hosts.encode("utf-8"))
        else:
            mode = os.stat(inventory).st_mode
            if stat.S_ISDIR(mode):
                _copy_inventory(inventory, str(self._root / "inventory"))
            elif stat.S_ISREG(mode):
                _copy_inventory(inventory, str(self._root / "inventory" / "hosts"))

        if self.playbook_path:
            try:
                playbook = Path(self.playbook_path).read_bytes()
            except OSError:
                _log.error("Failed to open playbook file %s", self.playbook_path)
                raise
            self._add_file("project/playbook.yaml", playbook)