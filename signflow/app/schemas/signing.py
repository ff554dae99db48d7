from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


MIN_FIELD_SIZE = 10.0


class Placement(BaseModel):
    """
    Visible signature placement, in PDF user-space points.

    Bounds are enforced on construction, before anything is sent to the
    Provider.
    """

    page: int = Field(1, ge=1)
    x: float = Field(..., ge=0)
    y: float = Field(..., ge=0)
    width: float = Field(..., ge=MIN_FIELD_SIZE)
    height: float = Field(..., ge=MIN_FIELD_SIZE)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def sign_prop(self) -> str:
        """Co-process placement string: ``page:[x,y,width,height]``."""
        return f"{self.page}:[{_num(self.x)},{_num(self.y)},{_num(self.width)},{_num(self.height)}]"

    def location(self) -> dict:
        """Signature field rectangle as lower-left / upper-right corners."""
        return {
            "page": self.page,
            "llx": _num(self.x),
            "lly": _num(self.y),
            "urx": _num(self.x + self.width),
            "ury": _num(self.y + self.height),
        }


def _num(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


class SignDocument(BaseModel):
    """A caller-supplied document queued for signing."""

    name: str = Field(..., min_length=1, max_length=255)
    content: bytes
    placement: Placement
    show_signature_image: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")
