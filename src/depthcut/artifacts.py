from __future__ import annotations

import mimetypes
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import boto3


@dataclass(frozen=True)
class ArtifactRef:
    """Where one published file (a layer, a preview or the manifest) ended up."""

    name: str
    uri: str
    content_type: str
    size: int
    mirror_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@runtime_checkable
class ArtifactStore(Protocol):
    def put_bytes(self, *, name: str, data: bytes, content_type: Optional[str] = None) -> ArtifactRef:
        ...


def _guess_type(name: str, content_type: Optional[str]) -> str:
    return content_type or mimetypes.guess_type(name)[0] or "application/octet-stream"


class LocalArtifactStore:
    """Write a job's output tree (layers/, previews/, manifest.json) under `root`."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def write(self, name: str, data: bytes) -> Path:
        dest = self.root / name
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return dest

    def put_bytes(self, *, name: str, data: bytes, content_type: Optional[str] = None) -> ArtifactRef:
        dest = self.write(name, data)
        return ArtifactRef(name=name, uri=dest.as_uri(), content_type=_guess_type(name, content_type), size=len(data))


class S3ArtifactStore:
    """
    Upload a job's output to s3://{bucket}/{prefix}/{job_id}/...

    `mirror`, when given, receives the same tree on local disk.
    """

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str,
        job_id: str,
        region: Optional[str] = None,
        mirror: Optional[LocalArtifactStore] = None,
    ):
        self.bucket = bucket
        self.key_root = "/".join(p for p in (prefix.strip("/"), job_id) if p)
        self.mirror = mirror
        self._s3 = boto3.client("s3", region_name=region)

    def put_bytes(self, *, name: str, data: bytes, content_type: Optional[str] = None) -> ArtifactRef:
        ct = _guess_type(name, content_type)
        key = f"{self.key_root}/{name}"
        self._s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=ct)
        mirrored = self.mirror.write(name, data) if self.mirror is not None else None
        return ArtifactRef(
            name=name,
            uri=f"s3://{self.bucket}/{key}",
            content_type=ct,
            size=len(data),
            mirror_path=str(mirrored) if mirrored is not None else None,
        )
