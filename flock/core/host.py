# flock/core/host.py
"""
Host descriptor

A host is an SSH connection plus a memoized set of setup tasks. Each task
becomes one remote-actions resource; asking for the same task twice
returns the resource already declared.
"""

import shlex
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from flock.config import settings
from flock.exceptions import ValidationError
from flock.schemas.actions import CommandAction, UploadAction, dump_actions
from flock.schemas.connection import SSHConnection
from .reconciler import Deployment, Ref

logger = logging.getLogger(__name__)

ActionT = Union[CommandAction, UploadAction]


class Host:
    """
    One remote machine in a deployment

    Usage:
        host = Host("host1", connection, deployment)
        base = host.base()
        host.setup_task("docker", [CommandAction(create="...")])
    """

    def __init__(self, name: str, connection: SSHConnection, deployment: Deployment):
        self.name = name
        self.connection = SSHConnection.parse(connection)
        self.deployment = deployment
        self._tasks: Dict[str, Ref] = {}
        self._port_scope: Optional[Ref] = None

    def __repr__(self) -> str:
        return f"Host({self.name}, {self.connection})"

    def actions_inputs(self, actions: Sequence[ActionT], triggers: Iterable = (), description: Optional[str] = None) -> dict:
        """Inputs of a remote-actions resource targeting this host"""
        inputs = {
            "connection": self.connection.model_dump(),
            "actions": dump_actions(actions),
            "triggers": list(triggers),
        }
        if description:
            inputs["description"] = description
        return inputs

    def setup_task(
        self,
        task: str,
        actions: Sequence[ActionT],
        triggers: Iterable = (),
        depends_on: Iterable[str] = (),
    ) -> Ref:
        """Declare an idempotent setup task once per host"""
        if task in self._tasks:
            return self._tasks[task]

        name = f"{self.name}-setup-{task}"
        deps = list(depends_on)
        if task != "base":
            deps.append(self.base().resource)

        ref = self.deployment.add(
            name,
            "remote-actions",
            self.actions_inputs(actions, triggers, description=name),
            depends_on=deps,
        )
        self._tasks[task] = ref
        logger.debug(f"Declared setup task {task} on {self.name}")
        return ref

    def base(self) -> Ref:
        """Directories every flock-managed service expects"""
        dirs = " ".join(shlex.quote(d) for d in (settings.REMOTE_CONFIG_DIR, settings.REMOTE_STATE_DIR))
        return self.setup_task("base", [CommandAction(create=f"mkdir -p {dirs}")])

    def port_scope(self, start_port: int, end_port: int, ipam_connection: Optional[dict]) -> Ref:
        """
        Underlay port scope of this host, declared once and shared by every
        network with an endpoint here

        Raises:
            ValidationError: If a network asks for a different range or allocator
        """
        inputs = {
            "host": self.name,
            "start_port": start_port,
            "end_port": end_port,
            "ipam_connection": ipam_connection,
        }
        if self._port_scope is not None:
            declared = self.deployment.resources[self._port_scope.resource].inputs
            if declared != inputs:
                raise ValidationError(
                    f"Host {self.name}: networks disagree on the underlay port range or allocator"
                )
            return self._port_scope

        self._port_scope = self.deployment.add(f"{self.name}-ports", "ipam-host", inputs)
        return self._port_scope

    @property
    def tasks(self) -> List[str]:
        return sorted(self._tasks)
