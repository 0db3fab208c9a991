"""
Provider-neutral field and tab descriptors.

These are created per request by the mapper and consumed once by the PDF
filler or an envelope provider; nothing here is retained between requests.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from subsidy_signing.core.errors import ValidationError

DEFAULT_ANCHOR_OFFSET = "0"


class FieldKind(str, Enum):
    """Kind of a catalog field."""
    TEXT = "text"
    RADIO = "radio"
    CHECKBOX = "checkbox"


class TabType(str, Enum):
    """Signer tab types placed by the envelope provider."""
    SIGN_HERE = "sign_here"
    DATE_SIGNED = "date_signed"
    TEXT = "text"


@dataclass(frozen=True)
class FieldAssignment:
    """A value for one catalog field, optionally bound to a recipient."""
    field_key: str
    value: Union[str, bool]
    recipient_id: Optional[str] = None
    kind: FieldKind = FieldKind.TEXT


@dataclass(frozen=True)
class TabDescriptor:
    """
    Placement of a signer tab.

    Exactly one shape is allowed: text-anchored (``anchor_text`` with optional
    offsets) or absolute (``document_index``, ``page_number``, ``x`` and ``y``
    all set). Anything else is rejected on construction.
    """
    tab_type: TabType
    anchor_text: Optional[str] = None
    anchor_offset_x: str = DEFAULT_ANCHOR_OFFSET
    anchor_offset_y: str = DEFAULT_ANCHOR_OFFSET
    document_index: Optional[int] = None
    page_number: Optional[int] = None
    x: Optional[int] = None
    y: Optional[int] = None
    value: Optional[str] = None
    locked: bool = False
    recipient_id: Optional[str] = None

    def __post_init__(self) -> None:
        absolute = (self.document_index, self.page_number, self.x, self.y)
        has_absolute = all(part is not None for part in absolute)
        partial_absolute = any(part is not None for part in absolute) and not has_absolute

        if self.anchor_text and (has_absolute or partial_absolute):
            raise ValidationError(
                "Tab must use either anchor text or absolute coordinates, not both",
                errors=[f"{self.tab_type.value}: ambiguous placement"],
            )
        if not self.anchor_text and not has_absolute:
            raise ValidationError(
                "Tab needs anchor text or documentIndex, pageNumber, x and y",
                errors=[f"{self.tab_type.value}: missing placement"],
            )

    @property
    def is_anchored(self) -> bool:
        return bool(self.anchor_text)

    @classmethod
    def anchored(cls, tab_type: TabType, anchor_text: str, **kwargs) -> "TabDescriptor":
        return cls(tab_type=tab_type, anchor_text=anchor_text, **kwargs)

    @classmethod
    def absolute(cls, tab_type: TabType, document_index: int, page_number: int, x: int, y: int, **kwargs) -> "TabDescriptor":
        return cls(tab_type=tab_type, document_index=document_index, page_number=page_number, x=x, y=y, **kwargs)
