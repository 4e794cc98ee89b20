from __future__ import annotations

from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SNAPSHOT_FORMAT_VERSION = 1


class PanelRendered(BaseModel):
    type: Literal["render"] = "render"
    panel: str
    html: str


class PanelCreated(BaseModel):
    type: Literal["panel_created"] = "panel_created"
    panel: str


class PanelRenamed(BaseModel):
    type: Literal["panel_renamed"] = "panel_renamed"
    old: str
    new: str


class PanelDeleted(BaseModel):
    type: Literal["panel_deleted"] = "panel_deleted"
    panel: str


# Ephemeral: only ever handed to the broadcast hub, never persisted.
ChangeEvent = Union[PanelRendered, PanelCreated, PanelRenamed, PanelDeleted]


class StoredCanvasState(BaseModel):
    """
    On-disk snapshot of every panel at one instant. Written whole on each mutation.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: Literal[1] = SNAPSHOT_FORMAT_VERSION
    updated_at: str = Field(..., alias="updatedAt")
    panels: Dict[str, str] = Field(default_factory=dict)


# ---------- HTTP request bodies ----------


class RenderRequest(BaseModel):
    html: Optional[str] = None
    panel: Optional[str] = None


class FileTransferRequest(BaseModel):
    path: Optional[str] = None
    panel: Optional[str] = None


class CreatePanelRequest(BaseModel):
    name: Optional[str] = None


class RenamePanelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_name: Optional[str] = Field(default=None, alias="newName")
