# flock/core/systemd.py
"""
systemd unit management expressed as remote actions
"""

import shlex
from typing import List, Optional, Sequence, Tuple, Union

from flock.config import settings
from flock.schemas.actions import CommandAction, UploadAction

UNIT_TEMPLATE = """[Unit]
Description={description}
Wants=network-online.target
After=network-online.target

[Service]
Type=simple
ExecStart={exec_start}
ExecReload=/bin/kill -HUP $MAINPID
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
"""


def unit_name(*parts: str) -> str:
    return "flock-" + "-".join(p.replace(".", "-") for p in parts) + ".service"


def render_unit(description: str, exec_start: str) -> str:
    return UNIT_TEMPLATE.format(description=description, exec_start=exec_start)


def service_actions(
    unit: str,
    unit_content: str,
    files: Sequence[Tuple[str, str]] = (),
    unit_dir: Optional[str] = None,
) -> List[Union[CommandAction, UploadAction]]:
    """
    Upload files and a unit, then enable and restart the service

    Teardown (reverse order) disables the service, removes the unit and
    files, then reloads systemd.

    Args:
        unit: Unit file name (e.g., "flock-mesh-backend.service")
        unit_content: Rendered unit file
        files: (content, remote_path) pairs the service reads
    """
    unit_path = f"{unit_dir or settings.SYSTEMD_UNIT_DIR}/{unit}"
    quoted = shlex.quote(unit)

    actions: List[Union[CommandAction, UploadAction]] = [
        CommandAction(create="true", delete="systemctl daemon-reload"),
    ]
    for content, path in files:
        actions.append(UploadAction(content=content, remote_path=path))
        actions.append(CommandAction(create=f"chmod 600 {shlex.quote(path)}"))
    actions += [
        UploadAction(content=unit_content, remote_path=unit_path),
        CommandAction(create="systemctl daemon-reload"),
        CommandAction(create=f"systemctl enable --now {quoted}", delete=f"systemctl disable --now {quoted}"),
        CommandAction(create=f"systemctl restart {quoted}"),
    ]
    return actions


def nebula_unit(description: str, config_file: str) -> str:
    return render_unit(description, f"{settings.NEBULA_BINARY} -config {config_file}")
