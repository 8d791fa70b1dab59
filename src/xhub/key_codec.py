"""Resource path model and the slash-delimited key codec.

A stored key is the canonical URL path of the resource it holds:

    /studies/{study}
    /studies/{study}/trials/{trial}
    /studies/{study}/files/{file}
    /files/{study}/{trial}/{file}

Every variable component is followed either by the end of the key or by a
delimiter, so a scan prefix built by ``prefix_for`` always ends in ``/`` and can
only match keys inside that scope.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

DELIMITER = "/"
# URL syntax characters; not allowed inside a name
URL_RESERVED = ("?", "#", "%")


class ResourceKind(str, Enum):
    STUDY = "study"
    TRIAL = "trial"
    FILE = "file"


Segment = Tuple[ResourceKind, str]

_SHAPES = {
    (ResourceKind.STUDY,),
    (ResourceKind.STUDY, ResourceKind.TRIAL),
    (ResourceKind.STUDY, ResourceKind.FILE),
    (ResourceKind.STUDY, ResourceKind.TRIAL, ResourceKind.FILE),
}


@dataclass
class KeyCodecError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class InvalidPathSegment(KeyCodecError):
    segment: str
    kind: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (segment={self.segment!r}, kind={self.kind})"


@dataclass
class InvalidKey(KeyCodecError):
    key: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (key={self.key!r})"


def validate_segment(name: object, kind: ResourceKind | None = None) -> str:
    kind_label = kind.value if kind else None
    if not isinstance(name, str):
        raise InvalidPathSegment("Segment must be a string", repr(name), kind_label)
    if name == "":
        raise InvalidPathSegment("Segment must not be empty", name, kind_label)
    if DELIMITER in name:
        raise InvalidPathSegment("Segment must not contain '/'", name, kind_label)
    for char in URL_RESERVED:
        if char in name:
            raise InvalidPathSegment(f"Segment must not contain {char!r}", name, kind_label)
    return name


@dataclass(frozen=True)
class ResourcePath:
    """Logical identity of a resource: ordered (kind, name) segments."""

    segments: Tuple[Segment, ...]

    def __post_init__(self) -> None:
        shape = tuple(kind for kind, _ in self.segments)
        if shape not in _SHAPES:
            raise InvalidPathSegment(
                "Unsupported resource shape",
                "/".join(k.value for k in shape),
            )
        for kind, name in self.segments:
            validate_segment(name, kind)

    @classmethod
    def study(cls, study: str) -> "ResourcePath":
        return cls(((ResourceKind.STUDY, study),))

    @classmethod
    def trial(cls, study: str, trial: str) -> "ResourcePath":
        return cls(((ResourceKind.STUDY, study), (ResourceKind.TRIAL, trial)))

    @classmethod
    def study_file(cls, study: str, file: str) -> "ResourcePath":
        return cls(((ResourceKind.STUDY, study), (ResourceKind.FILE, file)))

    @classmethod
    def trial_file(cls, study: str, trial: str, file: str) -> "ResourcePath":
        return cls(
            (
                (ResourceKind.STUDY, study),
                (ResourceKind.TRIAL, trial),
                (ResourceKind.FILE, file),
            )
        )

    @property
    def kind(self) -> ResourceKind:
        return self.segments[-1][0]

    @property
    def name(self) -> str:
        return self.segments[-1][1]

    @property
    def shape(self) -> Tuple[ResourceKind, ...]:
        return tuple(kind for kind, _ in self.segments)

    @property
    def parent(self) -> "ResourcePath | None":
        if len(self.segments) == 1:
            return None
        return ResourcePath(self.segments[:-1])

    def child(self, kind: ResourceKind, name: str) -> "ResourcePath":
        return ResourcePath(self.segments + ((kind, name),))

    def is_ancestor_of(self, other: "ResourcePath") -> bool:
        size = len(self.segments)
        return len(other.segments) > size and other.segments[:size] == self.segments

    def __str__(self) -> str:
        return encode(self).decode("utf-8")


def encode(path: ResourcePath) -> bytes:
    names = [name for _, name in path.segments]
    shape = path.shape
    if shape == (ResourceKind.STUDY,):
        text = f"/studies/{names[0]}"
    elif shape == (ResourceKind.STUDY, ResourceKind.TRIAL):
        text = f"/studies/{names[0]}/trials/{names[1]}"
    elif shape == (ResourceKind.STUDY, ResourceKind.FILE):
        text = f"/studies/{names[0]}/files/{names[1]}"
    else:
        text = f"/files/{names[0]}/{names[1]}/{names[2]}"
    return text.encode("utf-8")


def decode(key: bytes | str) -> ResourcePath:
    """Turn a stored key back into the path it was encoded from."""
    if isinstance(key, (bytes, bytearray, memoryview)):
        try:
            text = bytes(key).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidKey("Key is not valid UTF-8", repr(bytes(key))) from exc
    else:
        text = key
    parts = text.split(DELIMITER)
    if len(parts) < 3 or parts[0] != "":
        raise InvalidKey("Key must be an absolute resource path", text)
    parts = parts[1:]
    try:
        if parts[0] == "studies":
            if len(parts) == 2:
                return ResourcePath.study(parts[1])
            if len(parts) == 4 and parts[2] == "trials":
                return ResourcePath.trial(parts[1], parts[3])
            if len(parts) == 4 and parts[2] == "files":
                return ResourcePath.study_file(parts[1], parts[3])
        elif parts[0] == "files" and len(parts) == 4:
            return ResourcePath.trial_file(parts[1], parts[2], parts[3])
    except InvalidPathSegment as exc:
        raise InvalidKey(f"Key has an invalid segment: {exc.message}", text) from exc
    raise InvalidKey("Key does not match a resource shape", text)


def prefix_for(parent: ResourcePath, kind: ResourceKind) -> bytes:
    """Scan prefix covering every direct child of ``kind`` under ``parent``."""
    shape = parent.shape
    names = [name for _, name in parent.segments]
    if shape == (ResourceKind.STUDY,) and kind == ResourceKind.TRIAL:
        text = f"/studies/{names[0]}/trials/"
    elif shape == (ResourceKind.STUDY,) and kind == ResourceKind.FILE:
        text = f"/studies/{names[0]}/files/"
    elif shape == (ResourceKind.STUDY, ResourceKind.TRIAL) and kind == ResourceKind.FILE:
        text = f"/files/{names[0]}/{names[1]}/"
    else:
        raise InvalidPathSegment(
            f"{parent.kind.value} has no {kind.value} children",
            str(parent),
            kind.value,
        )
    return text.encode("utf-8")


def descendant_prefixes(path: ResourcePath) -> List[bytes]:
    """Prefixes that together cover every transitive descendant of ``path``.

    A study owns everything under ``/studies/{study}/`` (trials and study-level
    files) and everything under ``/files/{study}/`` (trial-level files).
    """
    shape = path.shape
    names = [name for _, name in path.segments]
    if shape == (ResourceKind.STUDY,):
        return [
            f"/studies/{names[0]}/".encode("utf-8"),
            f"/files/{names[0]}/".encode("utf-8"),
        ]
    if shape == (ResourceKind.STUDY, ResourceKind.TRIAL):
        return [prefix_for(path, ResourceKind.FILE)]
    return []
