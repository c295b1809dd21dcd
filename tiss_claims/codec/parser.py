"""
Return file parsing entry points.
"""

import xml.etree.ElementTree as ET
from typing import Optional, Sequence

import structlog

from tiss_claims.codec.encoding import decode
from tiss_claims.codec.models import ParseResult
from tiss_claims.codec.strategies import (
    DEFAULT_STRATEGIES,
    STRATEGIES_BY_NAME,
    LenientGenericStrategy,
    ParserStrategy,
)

logger = structlog.get_logger()


def select_strategy(
    text: str,
    strategies: Sequence[ParserStrategy] = DEFAULT_STRATEGIES,
) -> ParserStrategy:
    """First strategy that accepts the decoded text."""
    for strategy in strategies:
        if strategy.can_handle(text):
            return strategy
    return LenientGenericStrategy()


def select_parser_strategy(data: bytes) -> str:
    """
    Pick the parser strategy for raw return bytes.

    Args:
        data: Raw file bytes

    Returns:
        Strategy id (tiss_xml, pipe_delimited or lenient)
    """
    text, _ = decode(data)
    return select_strategy(text).name


def parse_return(data: bytes, strategy_name: Optional[str] = None) -> ParseResult:
    """
    Parse an operator return file.

    Never raises on malformed records: each strategy collects them in
    ``unmatched_lines`` and keeps the rest. If the document itself cannot be
    read as XML, the lenient strategy takes over and a warning is recorded.

    Args:
        data: Raw file bytes
        strategy_name: Force a strategy instead of auto-detection

    Returns:
        ParseResult with outcomes, unmatched records and header metadata
    """
    text, encoding = decode(data)

    if strategy_name:
        if strategy_name not in STRATEGIES_BY_NAME:
            raise ValueError(f"Unknown parser strategy: {strategy_name}")
        strategy = STRATEGIES_BY_NAME[strategy_name]
    else:
        strategy = select_strategy(text)

    result = ParseResult(strategy=strategy.name, encoding=encoding)
    try:
        strategy.parse(text, result)
    except ET.ParseError as e:
        logger.warning(
            "parser_strategy_failed",
            strategy=strategy.name,
            error=str(e),
        )
        fallback = LenientGenericStrategy()
        result = ParseResult(
            strategy=fallback.name,
            encoding=encoding,
            warnings=[f"{strategy.name} could not read file: {e}"],
        )
        fallback.parse(text, result)

    logger.debug(
        "return_parsed",
        strategy=result.strategy,
        encoding=encoding,
        outcomes=len(result.guide_outcomes),
        unmatched=len(result.unmatched_lines),
    )
    return result
