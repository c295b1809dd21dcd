"""
Interchange codec: batch file encoding and operator return parsing.
"""

from tiss_claims.codec.encoding import detect_encoding, decode
from tiss_claims.codec.encoder import encode, content_hash, transaction_id
from tiss_claims.codec.models import ParseResult, ReturnHeader, UnmatchedLine
from tiss_claims.codec.parser import parse_return, select_parser_strategy
from tiss_claims.codec.strategies import SUPPORTED_TISS_VERSIONS

__all__ = [
    "detect_encoding",
    "decode",
    "encode",
    "content_hash",
    "transaction_id",
    "ParseResult",
    "ReturnHeader",
    "UnmatchedLine",
    "parse_return",
    "select_parser_strategy",
    "SUPPORTED_TISS_VERSIONS",
]
