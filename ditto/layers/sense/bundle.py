"""
Element Bundle - portable multi-locator identity of one DOM element.

A bundle is built once from a live node at capture time and is only read
afterwards. It carries every independent descriptor the locator chain can
use, plus the frame / shadow-root path needed to reach the element's
owning document.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
import math


@dataclass(frozen=True)
class BoundingBox:
    """Element rectangle in CSS pixels at capture time."""
    left: float
    top: float
    width: float
    height: float

    def distance_to(self, other: "BoundingBox") -> float:
        """Euclidean distance between top-left corners."""
        return math.hypot(self.left - other.left, self.top - other.top)

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_dict(self) -> Dict[str, float]:
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["BoundingBox"]:
        if not data:
            return None
        return cls(
            left=float(data.get("left", 0)),
            top=float(data.get("top", 0)),
            width=float(data.get("width", 0)),
            height=float(data.get("height", 0)),
        )


@dataclass(frozen=True)
class FrameDescriptor:
    """
    Identifies one frame element inside its parent document.

    Resolution prefers ``id``, then ``name``, then ``index`` (position among
    all ``iframe``/``frame`` elements of the parent document).
    """
    id: str = ""
    name: str = ""
    index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "index": self.index}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FrameDescriptor":
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            index=int(data.get("index") or 0),
        )

    def __str__(self) -> str:
        if self.id:
            return f"frame#{self.id}"
        if self.name:
            return f"frame[name={self.name}]"
        return f"frame[{self.index}]"


def _freeze(mapping: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class ElementBundle:
    """
    Identity record combining structural, attribute, textual, positional
    and context descriptors.

    Example:
        >>> bundle = ElementBundle(tag="button", id="submit", class_list="btn btn-primary")
        >>> bundle.has_locator()
        True
    """
    xpath: str = ""
    id: str = ""
    name: str = ""
    aria_label: str = ""
    placeholder: str = ""
    class_list: str = ""
    data_attrs: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    tag: str = ""
    text: str = ""
    bounding: Optional[BoundingBox] = None
    frame_chain: Tuple[FrameDescriptor, ...] = ()
    shadow_hosts: Tuple[str, ...] = ()
    is_closed_shadow: bool = False

    def __post_init__(self):
        # Normalize containers so callers can pass lists and dicts.
        object.__setattr__(self, "data_attrs", _freeze(self.data_attrs))
        object.__setattr__(self, "frame_chain", tuple(self.frame_chain))
        object.__setattr__(self, "shadow_hosts", tuple(self.shadow_hosts))
        object.__setattr__(self, "tag", (self.tag or "").lower())

    @property
    def classes(self) -> Tuple[str, ...]:
        return tuple(self.class_list.split())

    @property
    def in_frame(self) -> bool:
        return bool(self.frame_chain)

    @property
    def in_shadow(self) -> bool:
        return bool(self.shadow_hosts)

    def has_locator(self) -> bool:
        """True when at least one field can drive a locator strategy."""
        return any((
            self.xpath,
            self.id,
            self.name,
            self.aria_label,
            self.placeholder,
            self.class_list.strip(),
            self.data_attrs,
            self.text,
            self.bounding is not None,
        ))

    def describe(self) -> str:
        """Short human-readable target description for logs."""
        if self.id:
            return f"{self.tag or '*'}#{self.id}"
        if self.name:
            return f"{self.tag or '*'}[name={self.name}]"
        if self.aria_label:
            return f"{self.tag or '*'}[aria-label={self.aria_label}]"
        if self.xpath:
            return self.xpath
        if self.text:
            return f'{self.tag or "*"} "{self.text[:30]}"'
        return self.tag or "<element>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "xpath": self.xpath,
            "id": self.id,
            "name": self.name,
            "aria_label": self.aria_label,
            "placeholder": self.placeholder,
            "class_list": self.class_list,
            "data_attrs": dict(self.data_attrs),
            "tag": self.tag,
            "text": self.text,
            "bounding": self.bounding.to_dict() if self.bounding else None,
            "frame_chain": [f.to_dict() for f in self.frame_chain],
            "shadow_hosts": list(self.shadow_hosts),
            "is_closed_shadow": self.is_closed_shadow,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ElementBundle":
        return cls(
            xpath=data.get("xpath") or "",
            id=data.get("id") or "",
            name=data.get("name") or "",
            aria_label=data.get("aria_label") or "",
            placeholder=data.get("placeholder") or "",
            class_list=data.get("class_list") or "",
            data_attrs=data.get("data_attrs") or {},
            tag=data.get("tag") or "",
            text=data.get("text") or "",
            bounding=BoundingBox.from_dict(data.get("bounding")),
            frame_chain=tuple(FrameDescriptor.from_dict(f) for f in data.get("frame_chain") or ()),
            shadow_hosts=tuple(data.get("shadow_hosts") or ()),
            is_closed_shadow=bool(data.get("is_closed_shadow")),
        )
