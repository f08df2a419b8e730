"""
Downstream distribution hooks.

A hook is an async callable taking the freshly persisted Snapshot. The
publisher runs each hook in its own task and only logs the outcome, so a hook
may raise freely; it just must not hang forever (every hook is time-bounded).
"""
import asyncio
import json
import logging
import shlex

import httpx

from kikistatus.config import GIST_ID, GITHUB_TOKEN, HOOK_TIMEOUT, PUBLISH_COMMAND
from kikistatus.models import Snapshot

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class HookError(Exception):
    """Raised by a hook when distribution did not succeed."""

    def __init__(self, hook: str, detail: str) -> None:
        self.hook = hook
        self.detail = detail
        super().__init__(f"{hook} failed: {detail}")


class CommandHook:
    """Runs an external publish script (e.g. one that pushes status.json to a Gist)."""

    def __init__(self, command: str, timeout: float = HOOK_TIMEOUT) -> None:
        self.argv = shlex.split(command)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"CommandHook({self.argv[0] if self.argv else ''!r})"

    async def __call__(self, snapshot: Snapshot) -> None:
        proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise HookError(repr(self), f"timed out after {self.timeout}s")

        if stderr:
            logger.warning(f"{self!r} stderr: {stderr.decode(errors='replace').strip()}")
        if proc.returncode != 0:
            raise HookError(repr(self), f"exit status {proc.returncode}")
        logger.info(f"{self!r} published: {stdout.decode(errors='replace').strip()}")


class GistHook:
    """Mirrors the snapshot into a GitHub Gist file that remote viewers can poll."""

    def __init__(self, gist_id: str, token: str, filename: str = "status.json",
                 timeout: float = HOOK_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.gist_id = gist_id
        self.token = token
        self.filename = filename
        self.timeout = timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"GistHook({self.gist_id!r})"

    async def __call__(self, snapshot: Snapshot) -> None:
        body = {"files": {self.filename: {"content": json.dumps(snapshot.to_wire(), indent=2) + "\n"}}}
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
        }
        async with httpx.AsyncClient(base_url=GITHUB_API, timeout=self.timeout,
                                     transport=self._transport) as client:
            try:
                r = await client.patch(f"/gists/{self.gist_id}", json=body, headers=headers)
            except httpx.HTTPError as e:
                raise HookError(repr(self), f"{type(e).__name__}: {e}") from e
        if r.status_code != 200:
            raise HookError(repr(self), f"HTTP {r.status_code}")
        logger.info(f"{self!r} updated to state={snapshot.state}")


def build_hooks() -> list:
    """Hooks enabled by configuration, in the order they are started."""
    hooks = []
    if PUBLISH_COMMAND:
        hooks.append(CommandHook(PUBLISH_COMMAND))
    if GIST_ID and GITHUB_TOKEN:
        hooks.append(GistHook(GIST_ID, GITHUB_TOKEN))
    elif GIST_ID:
        logger.warning("KIKI_GIST_ID is set but KIKI_GITHUB_TOKEN is not; Gist mirroring disabled")
    return hooks
