"""
HTTP Accept-Encoding header parsing and negotiation utilities.
"""
import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)

# Encodings we can produce, most preferred first.
# "br" > "gzip" > "deflate"
DEFAULT_PRIORITIES: tuple[str, ...] = ("br", "gzip", "deflate")

SUPPORTED_ENCODINGS = frozenset(DEFAULT_PRIORITIES)


@dataclass(frozen=True)
class EncodingToken:
    """
    A single content-coding from an 'Accept-Encoding' header with its q-factor.
    """
    name: str
    weight: float = 1.0

    @property
    def forbidden(self) -> bool:
        return self.weight == 0


# Sentinel for "send the body unmodified"
IDENTITY = EncodingToken("identity")

AcceptEncodingSet = tuple[EncodingToken, ...]


@dataclass(frozen=True)
class ServerPriorityList:
    """
    Immutable, ordered list of the encodings the server is willing to produce.
    Earlier entries win ties between equally weighted client preferences.
    """
    encodings: tuple[str, ...] = DEFAULT_PRIORITIES

    def __post_init__(self) -> None:
        encodings = tuple(name.strip().lower() for name in self.encodings)
        if not encodings:
            raise ValueError("priorities must name at least one encoding")
        unsupported = [name for name in encodings if name not in SUPPORTED_ENCODINGS]
        if unsupported:
            raise ValueError(f"unsupported encodings in priorities: {unsupported}")
        if len(set(encodings)) != len(encodings):
            raise ValueError(f"duplicate encodings in priorities: {encodings}")
        object.__setattr__(self, "encodings", encodings)

    def __iter__(self) -> Iterator[str]:
        return iter(self.encodings)


@dataclass(frozen=True)
class NegotiationResult:
    chosen: EncodingToken = IDENTITY

    @property
    def is_identity(self) -> bool:
        return self.chosen.name == IDENTITY.name

    @property
    def encoding(self) -> str:
        return self.chosen.name


def parse_part(part: str) -> EncodingToken | None:
    """
    Parses a single part of the 'Accept-Encoding' header (e.g., "gzip;q=0.8").
    Returns an EncodingToken, or None if the part is empty or malformed.
    """
    part = part.strip()
    if not part:
        return None

    components = part.split(";")
    coding_name = components[0].strip().lower()
    if not coding_name:
        return None

    q_val = 1.0  # Default q-factor is 1.0 per RFC

    # Find the "q=" parameter, if it exists
    for param in components[1:]:
        key, _, value = param.strip().partition("=")
        if key.strip().lower() != "q":
            continue
        try:
            q_val = float(value.strip())
        except ValueError:
            logger.debug("Dropping %r: unparsable q-factor", part)
            return None
        break

    if math.isnan(q_val) or not 0.0 <= q_val <= 1.0:
        logger.debug("Dropping %r: q-factor out of range", part)
        return None

    return EncodingToken(coding_name, q_val)


def parse_accept_encoding(accept_encoding: str | None) -> AcceptEncodingSet:
    """
    Parses the raw 'Accept-Encoding' header value into a set of tokens.

    Duplicate names collapse to their last occurrence. An absent or empty
    header yields an empty set.
    """
    if not accept_encoding:
        return ()

    tokens: dict[str, EncodingToken] = {}
    for part_str in accept_encoding.split(","):
        token = parse_part(part_str)
        if token is not None:
            tokens.pop(token.name, None)
            tokens[token.name] = token
    return tuple(tokens.values())


def negotiate(
    accepted: AcceptEncodingSet,
    priorities: ServerPriorityList,
) -> NegotiationResult:
    """
    Picks the server encoding with the highest client weight.

    Each server encoding resolves to the client's explicit weight, else the
    '*' weight, else 0. Zero-weight encodings are never chosen, and equal
    weights are settled by server priority. When nothing qualifies the result
    is identity; the request is never rejected, even if the client also
    forbade identity.
    """
    weights = {token.name: token.weight for token in accepted}
    wildcard = weights.get("*", 0.0)

    best: EncodingToken | None = None
    for name in priorities:
        weight = weights.get(name, wildcard)
        if weight <= 0:
            continue
        # Strict comparison keeps the earlier (server-preferred) entry on ties
        if best is None or weight > best.weight:
            best = EncodingToken(name, weight)

    if best is None:
        return NegotiationResult()
    return NegotiationResult(best)


@lru_cache(maxsize=128)
def get_preferred_encoding(
    accept_encoding: str,
    priorities: ServerPriorityList,
) -> NegotiationResult:
    """
    Parses the 'Accept-Encoding' header string and returns the negotiated
    encoding for the given server priorities.

    Results are LRU-cached for performance.
    """
    result = negotiate(parse_accept_encoding(accept_encoding), priorities)
    logger.debug("Negotiated %r for Accept-Encoding %r", result.encoding, accept_encoding)
    return result
