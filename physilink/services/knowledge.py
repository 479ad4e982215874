import base64
import binascii
import logging

from physilink.core.config import settings
from physilink.models.schemas import KnowledgeFile


logger = logging.getLogger("physilink.knowledge")

DEFAULT_IMAGE_MIME = "image/jpeg"


class KnowledgeFileError(ValueError):
    pass


def declared_type(mime_type: str) -> str:
    """``application/pdf`` -> ``PDF``."""
    main, _, sub = (mime_type or "").partition("/")
    return (sub or main).upper()


def ingest(name: str, raw: bytes, mime_type: str, max_bytes: int | None = None) -> KnowledgeFile:
    limit = settings.MAX_KNOWLEDGE_FILE_BYTES if max_bytes is None else max_bytes
    if not raw:
        raise KnowledgeFileError(f"{name or 'file'} is empty")
    if len(raw) > limit:
        raise KnowledgeFileError(f"{name} is larger than {limit} bytes")
    mime_type = mime_type or "application/octet-stream"
    kf = KnowledgeFile(
        name=name or "untitled",
        type=declared_type(mime_type),
        data=base64.b64encode(raw).decode("ascii"),
        mime_type=mime_type,
    )
    logger.info("ingested %s (%s, %d bytes)", kf.name, kf.mime_type, len(raw))
    return kf


def decode_data_url(value: str) -> tuple[str, str]:
    """
    Split a browser data URL (``data:image/jpeg;base64,....``) into
    (mime_type, base64 payload). A bare base64 string is taken as a JPEG.
    """
    value = (value or "").strip()
    if not value:
        raise KnowledgeFileError("empty image")
    if value.startswith("data:"):
        header, sep, payload = value.partition(",")
        if not sep:
            raise KnowledgeFileError("malformed data URL")
        mime_type = header[len("data:"):].split(";")[0] or DEFAULT_IMAGE_MIME
    else:
        mime_type, payload = DEFAULT_IMAGE_MIME, value
    try:
        base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise KnowledgeFileError("image payload is not base64")
    return mime_type, payload
