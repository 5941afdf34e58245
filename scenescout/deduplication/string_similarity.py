"""
String Similarity Algorithms

Named string-matching strategies behind a single ``string_similarity``
entry point. All algorithms return a value in [0, 1] where 1.0 means
identical input.
"""

import logging
import math
import re
from collections import Counter
from typing import Callable, Dict, List

import jellyfish
from fuzzywuzzy import fuzz

logger = logging.getLogger(__name__)

SimilarityFunction = Callable[[str, str], float]

_TOKEN_RE = re.compile(r"\w+")

_ALGORITHMS: Dict[str, SimilarityFunction] = {}


def register_algorithm(name: str, func: SimilarityFunction) -> None:
    """Register a string similarity algorithm under ``name``.

    Registering an existing name replaces it.
    """
    if not callable(func):
        raise TypeError(f"Similarity algorithm '{name}' must be callable")
    _ALGORITHMS[name] = func
    logger.debug(f"Registered string similarity algorithm '{name}'")


def available_algorithms() -> List[str]:
    return sorted(_ALGORITHMS)


def string_similarity(a: str, b: str, algorithm: str = "hybrid") -> float:
    """Compare two strings with the named algorithm.

    Args:
        a: First string
        b: Second string
        algorithm: Registered algorithm name

    Returns:
        Similarity in [0, 1]

    Raises:
        KeyError: If the algorithm is not registered
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    try:
        func = _ALGORITHMS[algorithm]
    except KeyError:
        raise KeyError(f"Unknown string similarity algorithm '{algorithm}'") from None

    return max(0.0, min(1.0, float(func(a, b))))


def levenshtein_similarity(a: str, b: str) -> float:
    """Edit distance normalized by the longer string."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - jellyfish.levenshtein_distance(a, b) / longest


def jaro_winkler_similarity(a: str, b: str) -> float:
    return jellyfish.jaro_winkler_similarity(a, b)


def cosine_similarity(a: str, b: str) -> float:
    """Cosine of the token count vectors."""
    vec_a = Counter(_TOKEN_RE.findall(a.lower()))
    vec_b = Counter(_TOKEN_RE.findall(b.lower()))
    if not vec_a or not vec_b:
        return 0.0

    dot = sum(vec_a[token] * vec_b[token] for token in vec_a.keys() & vec_b.keys())
    norm_a = math.sqrt(sum(v * v for v in vec_a.values()))
    norm_b = math.sqrt(sum(v * v for v in vec_b.values()))
    return dot / (norm_a * norm_b)


def hybrid_similarity(a: str, b: str) -> float:
    """Weighted blend of edit distance, Jaro-Winkler and token cosine."""
    return (
        0.4 * levenshtein_similarity(a, b)
        + 0.4 * jaro_winkler_similarity(a, b)
        + 0.2 * cosine_similarity(a, b)
    )


def token_set_similarity(a: str, b: str) -> float:
    """Order-insensitive token overlap ("Jazz Night Live" ~ "Live: Jazz Night")."""
    return fuzz.token_set_ratio(a, b) / 100.0


register_algorithm("levenshtein", levenshtein_similarity)
register_algorithm("jaro_winkler", jaro_winkler_similarity)
register_algorithm("cosine", cosine_similarity)
register_algorithm("hybrid", hybrid_similarity)
register_algorithm("token_set", token_set_similarity)
