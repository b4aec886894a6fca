"""
XML bodies for the S3 multipart protocol.

Two tiny jobs, kept apart from the HTTP client so they can be tested on
their own:
- serialize the CompleteMultipartUpload body
- pull the UploadId out of an InitiateMultipartUpload response

ETags are escaped before embedding. S3 ETags are normally quoted hex, but
a store is free to return anything, and one stray '&' would make the
whole completion request malformed.
"""

from typing import Iterable
from xml.etree import ElementTree
from xml.sax.saxutils import escape

from ...core.errors import ProtocolError
from ...core.migration.models import CompletedPart


def build_complete_multipart_body(parts: Iterable[CompletedPart]) -> bytes:
    """
    Serialize parts, sorted ascending by part number, as the completion body.

    The returned bytes are exactly what must be hashed and sent.
    """
    ordered = sorted(parts, key=lambda p: p.part_number)
    if not ordered:
        raise ValueError("Cannot complete a multipart upload with no parts")

    parts_xml = "".join(
        f"<Part><PartNumber>{part.part_number}</PartNumber>"
        f"<ETag>{escape(part.etag)}</ETag></Part>"
        for part in ordered
    )
    return f"<CompleteMultipartUpload>{parts_xml}</CompleteMultipartUpload>".encode("utf-8")


def parse_upload_id(body: str) -> str:
    """
    Extract <UploadId> from an initiate response.

    S3 wraps the document in a namespace and R2 may not, so the element is
    matched by local name.
    """
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as e:
        raise ProtocolError(f"Unparseable initiate response: {e}")

    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == "UploadId":
            upload_id = (element.text or "").strip()
            if upload_id:
                return upload_id
            break

    raise ProtocolError("Could not parse UploadId from response")
