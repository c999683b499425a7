"""Backend metadata snapshot for a single object."""

from dataclasses import asdict
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone

import mimetypes


DEFAULT_CONTENT_TYPE = "application/octet-stream"


def guess_content_type(key):
    return mimetypes.guess_type(key)[0] or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class ObjectRecord:
    """Metadata for one object, as reported by a list/head/upload call.

    ``name`` is the logical key (namespace prefix already stripped).
    """

    name: str
    size: int
    content_type: str
    created: datetime
    updated: datetime
    bucket: str
    media_link: str

    def as_dict(self):
        data = asdict(self)
        data["created"] = self.created.isoformat()
        data["updated"] = self.updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["created"] = datetime.fromisoformat(data["created"])
        data["updated"] = datetime.fromisoformat(data["updated"])
        return cls(**data)


def utcnow():
    return datetime.now(timezone.utc)
