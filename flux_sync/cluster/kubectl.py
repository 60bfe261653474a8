"""Transport that talks to the cluster by running kubectl.

Documents are fed to `kubectl apply -f -` and `kubectl delete -f -` on
stdin. Failures are split into two kinds: the cluster rejecting what was
sent (`ApplyException`) and the cluster not being reachable at all
(`TransportException`), which is judged from the error output.
"""

import json
import logging
import re
from typing import Any

from flux_sync.command import Command, run
from flux_sync.config import KubeConfig
from flux_sync.exceptions import (
    ApplyException,
    ConflictException,
    KubectlException,
    TransportException,
)

from .cluster import Transport

__all__ = [
    "Kubectl",
]

_LOGGER = logging.getLogger(__name__)

_UNREACHABLE = re.compile(
    r"unable to connect to the server|connection refused|dial tcp|i/o timeout"
    r"|no such host|timed out|tls handshake timeout",
    re.IGNORECASE,
)
_CONFLICT = re.compile(r"the object has been modified|\(Conflict\)", re.IGNORECASE)


def classify(err: KubectlException) -> KubectlException:
    """Return the exception that best describes a kubectl failure."""
    message = str(err)
    if _UNREACHABLE.search(message):
        return TransportException(message)
    if _CONFLICT.search(message):
        return ConflictException(message)
    return ApplyException(message)


class Kubectl(Transport):
    """Runs kubectl with the configured connection settings."""

    def __init__(self, config: KubeConfig) -> None:
        self._config = config

    def _connect_args(self) -> list[str]:
        config = self._config
        args: list[str] = []
        if config.server:
            args.append(f"--server={config.server}")
        if config.username:
            args.append(f"--username={config.username}")
        if config.password:
            args.append(f"--password={config.password}")
        if config.token:
            args.append(f"--token={config.token}")
        if config.client_certificate:
            args.append(f"--client-certificate={config.client_certificate}")
        if config.client_key:
            args.append(f"--client-key={config.client_key}")
        if config.certificate_authority:
            args.append(f"--certificate-authority={config.certificate_authority}")
        if config.context:
            args.append(f"--context={config.context}")
        return args

    def _secrets(self) -> tuple[str, ...]:
        config = self._config
        return tuple(
            f"--{flag}={value}"
            for flag, value in (("password", config.password), ("token", config.token))
            if value
        )

    async def run(self, args: list[str], stdin: bytes | None = None) -> str:
        """Run a kubectl subcommand, raising a classified exception on failure."""
        cmd = Command(
            [self._config.kubectl] + self._connect_args() + args,
            exc=KubectlException,
            redact=self._secrets(),
        )
        try:
            return await run(cmd, stdin=stdin, timeout=self._config.timeout)
        except KubectlException as err:
            raise classify(err) from err

    async def apply(self, payload: bytes) -> None:
        out = await self.run(["apply", "-f", "-"], payload)
        _LOGGER.debug("kubectl apply: %s", out.strip())

    async def delete(self, payload: bytes) -> None:
        out = await self.run(["delete", "--ignore-not-found", "-f", "-"], payload)
        _LOGGER.debug("kubectl delete: %s", out.strip())

    async def get_json(
        self, kind: str, namespace: str, name: str
    ) -> dict[str, Any] | None:
        """Return a single object, or None if it does not exist."""
        out = await self.run(
            [
                "get",
                kind,
                name,
                "--namespace",
                namespace,
                "--ignore-not-found",
                "-o",
                "json",
            ]
        )
        if not out.strip():
            return None
        return json.loads(out)

    async def merge_patch(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> None:
        """Apply a JSON merge patch to a single object."""
        await self.run(
            [
                "patch",
                kind,
                name,
                "--namespace",
                namespace,
                "--type=merge",
                "-p",
                json.dumps(patch),
            ]
        )

    async def api_resources(self) -> list[str]:
        """Return the resource types that can be listed and deleted."""
        out = await self.run(["api-resources", "--verbs=list,delete", "-o", "name"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def get_all(self, resource_types: list[str]) -> bytes:
        """Return every object of the given types across all namespaces."""
        out = await self.run(
            ["get", ",".join(resource_types), "--all-namespaces", "-o", "yaml"]
        )
        return out.encode("utf-8")

    def __str__(self) -> str:
        return f"kubectl({self._config.server or self._config.context or 'default'})"
