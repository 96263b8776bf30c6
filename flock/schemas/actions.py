# flock/schemas/actions.py
"""
Remote actions executed over an SSH session
"""

from pydantic import BaseModel, Field, ConfigDict, TypeAdapter
from typing import Annotated, List, Literal, Optional, Union


class CommandAction(BaseModel):
    """Shell command with an optional compensating delete command"""
    type: Literal["command"] = "command"
    create: str = Field(..., min_length=1, examples=["mkdir -p /etc/flock"])
    delete: Optional[str] = Field(None, examples=["rm -rf /etc/flock"])

    model_config = ConfigDict(frozen=True, extra="forbid")


class UploadAction(BaseModel):
    """File upload; teardown removes the remote file"""
    type: Literal["upload"] = "upload"
    content: str
    remote_path: str = Field(..., min_length=1, examples=["/etc/flock/net/backend.json"])

    model_config = ConfigDict(frozen=True, extra="forbid")


Action = Annotated[Union[CommandAction, UploadAction], Field(discriminator="type")]

action_list_adapter = TypeAdapter(List[Action])


def parse_actions(data: list) -> List[Union[CommandAction, UploadAction]]:
    """Parse recorded (JSON) actions back into models"""
    return action_list_adapter.validate_python(data)


def dump_actions(actions: list) -> list:
    return [action.model_dump() for action in actions]
