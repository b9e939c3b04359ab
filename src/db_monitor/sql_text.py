"""
SQL text helpers: redaction, normalization, fingerprinting and the keyword
checks used by the recommendation rules. These are heuristics over raw
text, not a SQL parser.
"""

import hashlib
import re
from typing import Any, Iterable, List, Optional, Sequence, Set

MAX_PARAMETER_LENGTH = 100

_PASSWORD_PATTERN = re.compile(r"password\s*=\s*'[^']*'", re.IGNORECASE)
_TOKEN_PATTERN = re.compile(r"token\s*=\s*'[^']*'", re.IGNORECASE)
_WHITESPACE = re.compile(r'\s+')

_POSITIONAL_PARAM = re.compile(r'\$\d+')
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_NUMBER = re.compile(r'\b\d+(?:\.\d+)?\b')

_TABLE_PATTERN = re.compile(
    r'\b(?:from|join|update|insert\s+into)\s+(?:[a-zA-Z_]\w*\.)?([a-zA-Z_]\w*)',
    re.IGNORECASE,
)
_WHERE = re.compile(r'\bwhere\b', re.IGNORECASE)
_SELECT = re.compile(r'\bselect\b', re.IGNORECASE)


def sanitize_query(query: str) -> str:
    """Mask password/token literals and collapse whitespace."""
    sanitized = _PASSWORD_PATTERN.sub("password='***'", query)
    sanitized = _TOKEN_PATTERN.sub("token='***'", sanitized)
    return _WHITESPACE.sub(' ', sanitized).strip()


def sanitize_parameters(params: Optional[Sequence[Any]]) -> Optional[List[Any]]:
    """Truncate long string bind values."""
    if params is None:
        return None
    if isinstance(params, dict):
        params = list(params.values())

    sanitized = []
    for param in params:
        if isinstance(param, str) and len(param) > MAX_PARAMETER_LENGTH:
            sanitized.append(param[:MAX_PARAMETER_LENGTH] + '...')
        else:
            sanitized.append(param)
    return sanitized


def normalize_query(query: str) -> str:
    """
    Reduce a query to its structural shape for grouping.

    Positional parameters, quoted string literals and standalone numbers
    become ``?``; whitespace is collapsed and the text lower-cased.
    """
    normalized = _POSITIONAL_PARAM.sub('?', query)
    normalized = _STRING_LITERAL.sub('?', normalized)
    normalized = _NUMBER.sub('?', normalized)
    normalized = _WHITESPACE.sub(' ', normalized).strip()
    return normalized.lower()


def fingerprint_query(query: str) -> str:
    """Stable identifier of the normalized query text."""
    return hashlib.md5(normalize_query(query).encode()).hexdigest()[:16]


def extract_tables(query: str, allowed: Optional[Iterable[str]] = None) -> List[str]:
    """Table names after FROM/JOIN/UPDATE/INSERT INTO, de-duplicated in order."""
    allowed_set: Optional[Set[str]] = {t.lower() for t in allowed} if allowed is not None else None
    tables: List[str] = []
    for match in _TABLE_PATTERN.findall(query):
        table = match.lower()
        if allowed_set is not None and table not in allowed_set:
            continue
        if table not in tables:
            tables.append(table)
    return tables


def has_where_clause(query: str) -> bool:
    return bool(_WHERE.search(query))


def is_select(query: str) -> bool:
    return bool(_SELECT.search(query))


def suggest_indexes(query: str) -> List[str]:
    """Pattern-matched index hints for a slow statement."""
    lowered = _WHITESPACE.sub(' ', query.lower())
    suggestions = []

    if 'where tenant_id =' in lowered and 'tenant_users' in lowered:
        suggestions.append('Consider composite index on (tenant_id, status)')

    if 'where email =' in lowered and 'tenant_users' in lowered:
        suggestions.append('Consider index on (tenant_id, email)')

    if 'order by created_at' in lowered:
        suggestions.append('Consider index including created_at for sorting')

    if 'join user_role_assignments' in lowered:
        suggestions.append('Verify index on user_role_assignments foreign keys')

    return suggestions
