"""
Text normalization for expense descriptions

"Groceries at WALMART #123" -> ["groceri", "at", "walmart", "123"]

Lower-cases, splits on anything that is not a letter or digit, then
Porter-stems each token. Deterministic: no state is kept between calls.
"""
import re
from typing import List, Optional

from nltk.stem import PorterStemmer

_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)

_stemmer = PorterStemmer()


def tokenize(text: Optional[str]) -> List[str]:
    """Lower-case and split on non-alphanumeric separators"""
    if not text:
        return []
    return _TOKEN_RE.findall(text.lower())


def normalize(text: Optional[str]) -> List[str]:
    """
    Tokenize and stem an expense description.

    Args:
        text: Free-text description (None and "" are allowed)

    Returns:
        Stemmed tokens in their original order, repeats preserved
    """
    return [_stemmer.stem(token) for token in tokenize(text)]
