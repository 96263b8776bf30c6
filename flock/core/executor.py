# flock/core/executor.py
"""
Action Executor
Runs ordered shell commands and file uploads over one SSH session
"""

import hashlib
import json
import shlex
import logging
from typing import Any, Callable, ContextManager, List, Optional, Sequence, Tuple, Union

from flock.exceptions import FlockError, ProvisioningError
from flock.schemas.actions import CommandAction, UploadAction, dump_actions, parse_actions
from flock.schemas.connection import SSHConnection
from . import ssh
from .reconciler import DiffResult, diff_keys, new_id

logger = logging.getLogger(__name__)

ActionT = Union[CommandAction, UploadAction]
Connector = Callable[[SSHConnection], ContextManager["ssh.SSHSession"]]


def fingerprint(*parts: Any) -> str:
    """Stable sha256 over JSON-serializable parts (for triggers)"""
    digest = hashlib.sha256()
    for part in parts:
        if isinstance(part, bytes):
            digest.update(part)
        elif isinstance(part, str):
            digest.update(part.encode("utf-8"))
        else:
            digest.update(json.dumps(part, sort_keys=True, default=str).encode("utf-8"))
    return digest.hexdigest()


def serialize(connection: SSHConnection, actions: Sequence[ActionT], triggers: Optional[list] = None) -> str:
    """Canonical form of the (connection, actions, triggers) tuple"""
    return json.dumps(
        {
            "connection": SSHConnection.parse(connection).model_dump(),
            "actions": dump_actions(actions),
            "triggers": list(triggers or []),
        },
        sort_keys=True,
        default=str,
    )


class ActionExecutor:
    """
    Applies and tears down action lists

    apply: listed order, first failure aborts the rest (no rollback)
    teardown: reverse order, every failure logged and swallowed
    """

    def __init__(self, connector: Connector = ssh.connect):
        self._connect = connector

    def apply(self, connection: SSHConnection, actions: Sequence[ActionT], resource: Optional[str] = None) -> None:
        connection = SSHConnection.parse(connection)
        with self._connect(connection) as session:
            for index, action in enumerate(actions):
                if isinstance(action, CommandAction):
                    logger.info(f"[{connection.host}] run: {action.create}")
                    result = session.run(action.create)
                    if result.stdout.strip():
                        logger.debug(result.stdout.strip())
                    if not result.ok:
                        raise ProvisioningError(
                            f"Action {index + 1}/{len(actions)} exited {result.exit_code}",
                            command=action.create,
                            exit_code=result.exit_code,
                            stderr=result.stderr,
                            resource=resource,
                        )
                else:
                    logger.info(f"[{connection.host}] upload: {action.remote_path}")
                    result = session.upload(action.content, action.remote_path)
                    if not result.ok:
                        raise ProvisioningError(
                            f"Upload to {action.remote_path} exited {result.exit_code}",
                            command=f"upload {action.remote_path}",
                            exit_code=result.exit_code,
                            stderr=result.stderr,
                            resource=resource,
                        )

    def teardown(self, connection: SSHConnection, actions: Sequence[ActionT], resource: Optional[str] = None) -> List[str]:
        """
        Undo actions in reverse order

        Returns:
            Error messages for every step that failed (already logged)
        """
        errors: List[str] = []
        try:
            connection = SSHConnection.parse(connection)
            with self._connect(connection) as session:
                for action in reversed(list(actions)):
                    if isinstance(action, CommandAction):
                        if not action.delete:
                            continue
                        command = action.delete
                    else:
                        command = f"rm -f {shlex.quote(action.remote_path)}"

                    logger.info(f"[{connection.host}] run: {command}")
                    try:
                        result = session.run(command)
                    except (FlockError, OSError) as e:
                        errors.append(f"{command}: {e}")
                        logger.error(f"Error executing delete command for {resource}: {e}")
                        continue
                    if not result.ok:
                        errors.append(f"{command}: {result.stderr.strip()}")
                        logger.error(
                            f"Error executing delete command for {resource} "
                            f"(exit {result.exit_code}): {result.stderr.strip()}"
                        )
        except (FlockError, OSError) as e:
            errors.append(str(e))
            logger.error(f"Teardown of {resource} could not run: {e}")
        return errors


# Singleton instance
action_executor = ActionExecutor()


# === Resource kind ===

class RemoteActionsKind:
    """
    Resource kind for an ordered action list on one host

    inputs: {connection, actions, triggers}
    Any difference in the serialized tuple replaces the resource.
    """
    name = "remote-actions"
    replace_keys = ("connection", "actions", "triggers")

    def __init__(self, executor: Optional[ActionExecutor] = None):
        self.executor = executor or action_executor

    def create(self, inputs: dict) -> Tuple[str, dict]:
        connection = SSHConnection.parse(inputs["connection"])
        actions = parse_actions(inputs["actions"])
        self.executor.apply(connection, actions, resource=inputs.get("description"))
        return new_id(), dict(inputs)

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        old = serialize(old_outputs["connection"], parse_actions(old_outputs["actions"]), old_outputs.get("triggers"))
        new = serialize(new_inputs["connection"], parse_actions(new_inputs["actions"]), new_inputs.get("triggers"))
        result = diff_keys(old_outputs, new_inputs, self.replace_keys)
        if old != new and not result.replace_keys:
            result.replace_keys = list(self.replace_keys)
        return result

    def delete(self, resource_id: str, outputs: dict) -> None:
        self.executor.teardown(
            outputs["connection"],
            parse_actions(outputs["actions"]),
            resource=outputs.get("description", resource_id),
        )
