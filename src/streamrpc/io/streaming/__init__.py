"""Wire format: frames and the NDJSON codec that carries them."""

from .codec import (
    CONTENT_TYPE,
    JSON_FIELDS,
    RESPONSE_HEADER,
    decode,
    decode_frame,
    decode_frames,
    encode,
    encode_frame,
    encode_frames,
    split_lines,
)
from .frame import (
    Frame,
    FrameKind,
    begin_frame,
    chunk_frame,
    end_frame,
    error_frame,
    shape_frame,
    value_frame,
)

__all__ = [
    "CONTENT_TYPE", "JSON_FIELDS", "RESPONSE_HEADER",
    "decode", "decode_frame", "decode_frames", "encode", "encode_frame", "encode_frames",
    "split_lines",
    "Frame", "FrameKind", "begin_frame", "chunk_frame", "end_frame", "error_frame", "shape_frame", "value_frame",
]
