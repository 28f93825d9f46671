"""Freehand drawing models."""
from typing import List, Optional
from pydantic import Field

from tutorsync.domain.classroom import StoreModel


class Stroke(StoreModel):
    """A single freehand stroke; ``points`` is a flat x,y list.

    Only used to check the shape of incoming lines. Drawings are stored
    exactly as the client sent them.
    """
    tool: str = "pencil"
    color: str = "#000000"
    stroke_width: float = 3
    points: List[float] = Field(default_factory=list)
    tension: Optional[float] = None
    is_dot: Optional[bool] = None
