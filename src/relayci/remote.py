# remote.py
"""
Remote execution over SSH.

A service connection names a host plus the credentials used to reach it.
The executor shells out to the OpenSSH client binaries (`ssh`, `scp`) so
that host keys, agents and ssh_config behave exactly as they do for the
user running the pipeline. Authentication is always non-interactive.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError, RemoteError, TOOL_HINTS

log = logging.getLogger(__name__)


class ServiceConnection(BaseModel):
    """A stored endpoint + credential reference (here: SSH to a VM)."""
    name: str
    host: str
    user: str
    port: int = 22
    identity_file: Optional[str] = None
    known_hosts: Optional[str] = None
    strict_host_key_checking: str = "accept-new"
    connect_timeout: int = 15
    options: Dict[str, str] = Field(default_factory=dict)

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"


def _expand(value):
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def load_connections(path: str | Path) -> Dict[str, ServiceConnection]:
    """
    Load service connections from a YAML file:

        connections:
          deploy-vm:
            host: 203.0.113.10
            user: azureuser
            identity_file: ${HOME}/.ssh/deploy_key

    String values may reference environment variables as ${VAR}.
    """
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"Service connections file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e

    raw = data.get("connections", data) if isinstance(data, dict) else None
    if not isinstance(raw, dict):
        raise ConfigError(f"{p}: expected a 'connections' mapping")

    out: Dict[str, ServiceConnection] = {}
    for name, body in raw.items():
        if not isinstance(body, dict):
            raise ConfigError(f"{p}: connection '{name}' must be a mapping")
        body = _expand(dict(body))
        body.setdefault("name", str(name))
        if body.get("identity_file"):
            body["identity_file"] = str(Path(body["identity_file"]).expanduser())
        try:
            out[str(name)] = ServiceConnection.model_validate(body)
        except ValidationError as e:
            raise ConfigError(f"{p}: invalid connection '{name}': {e}") from e
    return out


@dataclass
class RemoteResult:
    argv: List[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _collect(source: Path, contents: Sequence[str]) -> List[str]:
    """Relative posix paths of files under `source` matching any pattern."""
    patterns = list(contents) or ["**"]
    out = []
    for p in sorted(source.rglob("*")):
        if not p.is_file():
            continue
        rel = p.relative_to(source).as_posix()
        if any(fnmatch(rel, pat) for pat in patterns):
            out.append(rel)
    return out


class RemoteExecutor:
    """Copies files to and runs inline scripts on the host of one service connection."""

    def __init__(self, connection: ServiceConnection, *, ssh: str = "ssh", scp: str = "scp"):
        self.connection = connection
        self.ssh = ssh
        self.scp = scp

    # ------------------------------------------------------------------
    # argv builders
    # ------------------------------------------------------------------

    def _common_options(self) -> List[str]:
        c = self.connection
        opts = {
            "BatchMode": "yes",
            "StrictHostKeyChecking": c.strict_host_key_checking,
            "ConnectTimeout": str(c.connect_timeout),
        }
        if c.known_hosts:
            opts["UserKnownHostsFile"] = c.known_hosts
        opts.update(c.options)

        argv: List[str] = []
        if c.identity_file:
            argv.extend(["-i", c.identity_file])
        for k, v in opts.items():
            argv.extend(["-o", f"{k}={v}"])
        return argv

    def ssh_argv(self, *remote_command: str) -> List[str]:
        return [self.ssh, "-p", str(self.connection.port), *self._common_options(),
                self.connection.destination, *remote_command]

    def scp_argv(self, sources: Sequence[str], target_folder: str) -> List[str]:
        target = f"{self.connection.destination}:{target_folder.rstrip('/') or '/'}/"
        return [self.scp, "-r", "-P", str(self.connection.port), *self._common_options(), *sources, target]

    # ------------------------------------------------------------------
    # process plumbing
    # ------------------------------------------------------------------

    def _exec(self, argv: List[str], *, input_text: str | None = None,
              timeout: float | None = None, cwd: str | None = None) -> RemoteResult:
        if shutil.which(argv[0]) is None:
            raise RemoteError(
                f"'{argv[0]}' not found on PATH. {TOOL_HINTS.get(Path(argv[0]).name, '')}".strip()
            )
        log.debug("remote exec: %s", shlex.join(argv))
        try:
            proc = subprocess.run(
                argv,
                input=input_text,
                cwd=cwd,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteError(
                f"Remote command timed out after {timeout}s on {self.connection.name}",
                output=(e.stdout or "") if isinstance(e.stdout, str) else "",
            ) from e
        except OSError as e:
            raise RemoteError(f"Could not start {argv[0]}: {e}") from e
        return RemoteResult(argv=argv, exit_code=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")

    @staticmethod
    def _check(result: RemoteResult, what: str) -> RemoteResult:
        if not result.ok:
            combined = (result.stdout + "\n" + result.stderr).strip()
            raise RemoteError(
                f"{what} failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                output="\n".join(combined.splitlines()[-30:]),
            )
        return result

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def run(self, script: str, *, fail_fast: bool = True, timeout: float | None = None,
            check: bool = True) -> RemoteResult:
        """
        Run an inline script on the remote host via `bash -s`.

        Args:
            script: Script text, sent on stdin.
            fail_fast: Prepend `set -e` so the first failing command stops the script.
            timeout: Seconds before the ssh process is killed.
            check: Raise RemoteError on non-zero exit.
        """
        body = f"set -e\n{script}" if fail_fast else script
        result = self._exec(self.ssh_argv("bash", "-s"), input_text=body, timeout=timeout)
        return self._check(result, f"Remote script on {self.connection.name}") if check else result

    def copy(
        self,
        source_folder: str | Path,
        target_folder: str,
        *,
        contents: Sequence[str] = ("**",),
        clean_target: bool = False,
        timeout: float | None = None,
    ) -> RemoteResult:
        """
        Copy files matching `contents` under `source_folder` to `target_folder`
        on the remote host, preserving their relative layout.
        """
        src = Path(source_folder).resolve()
        if not src.is_dir():
            raise RemoteError(f"Source folder not found: {src}")

        files = _collect(src, contents)
        if not files:
            raise RemoteError(f"No files under {src} match {list(contents)}")

        target_q = shlex.quote(target_folder)
        prepare = f"mkdir -p {target_q}\n"
        if clean_target:
            prepare = f"mkdir -p {target_q}\nfind {target_q} -mindepth 1 -delete\n"
        self.run(prepare, timeout=timeout)

        with tempfile.TemporaryDirectory(prefix="relayci-scp-") as staging:
            stage_root = Path(staging)
            for rel in files:
                dst = stage_root / rel
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src / rel, dst)
            # "./" prefix keeps names starting with "-" from being read as options
            top_level = sorted(f"./{p.name}" for p in stage_root.iterdir())
            result = self._exec(self.scp_argv(top_level, target_folder), cwd=str(stage_root), timeout=timeout)

        log.debug("copied %d file(s) to %s:%s", len(files), self.connection.name, target_folder)
        return self._check(result, f"Copy to {self.connection.name}:{target_folder}")
