"""Process identity as seen by the agent."""

from __future__ import annotations

__all__ = ["ProcessIdentity"]

import os
import sys

from pydantic import BaseModel, Field


class ProcessIdentity(BaseModel):
    """Identifies the monitored process towards the agent and backend.

    ``pid`` starts out as the local process ID and is replaced by the PID
    the agent reports in its announce response (which differs inside
    containers). ``agent_uuid`` becomes the host ID once announced.
    """

    pid: int = Field(default_factory=os.getpid)
    host_id: str | None = None
    agent_uuid: str | None = None
    args: list[str] = Field(default_factory=lambda: list(sys.argv))

    @property
    def entity_id(self) -> str:
        return str(self.pid)

    def from_header(self) -> dict[str, str]:
        """Return the ``f`` field attached to every span."""
        header = {"e": self.entity_id}
        host = self.agent_uuid or self.host_id
        if host:
            header["h"] = host
        return header

    def update_from_announce(self, pid: int | None, agent_uuid: str | None) -> None:
        if pid is not None:
            self.pid = pid
        if agent_uuid:
            self.agent_uuid = agent_uuid

    def announce_payload(self) -> dict[str, object]:
        return {
            "pid": os.getpid(),
            "pidFromParentNS": False,
            "args": self.args[1:],
            "name": self.args[0] if self.args else "",
            "cpuSetFileContent": _read_cpuset(),
        }


def _read_cpuset() -> str | None:
    try:
        with open("/proc/self/cpuset", encoding="utf-8") as fh:
            return fh.read().strip() or None
    except OSError:
        return None
