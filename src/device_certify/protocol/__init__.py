"""Protocol layer: frame decoding, checksum, command tables, and payload parsing."""

from .framing import decode_reply, extract_payload, decode_reply_code
from .commands import Command, synthesize_numeric_request
from .parser import ParseResult, parse_semantic
