"""
Feature vectorization - bag-of-words presence flags plus a scaled amount

For a vocabulary of size V the vector has V + 1 slots:
- slots [0, V): 1.0 if the stemmed token occurs in the description
- slot V:       min(amount / 1000, 1)

Unknown tokens are ignored, so a fixed vocabulary always yields a vector
of the width the model was trained with.
"""
from typing import Dict, Iterable, List, Sequence

import numpy as np

AMOUNT_SCALE = 1000.0

Vocabulary = Dict[str, int]
CategoryIndex = Dict[str, int]


def build_vocabulary(token_lists: Iterable[Sequence[str]]) -> Vocabulary:
    """
    Assign dense 0-based indexes to tokens in first-seen order.

    Args:
        token_lists: Normalized tokens of each training description

    Returns:
        token -> index, indexes contiguous in [0, len(vocabulary))
    """
    vocabulary: Vocabulary = {}
    for tokens in token_lists:
        for token in tokens:
            if token not in vocabulary:
                vocabulary[token] = len(vocabulary)
    return vocabulary


def build_category_index(category_ids: Iterable[str]) -> CategoryIndex:
    """Assign output slots to categories in first-seen order"""
    index: CategoryIndex = {}
    for category_id in category_ids:
        if category_id not in index:
            index[category_id] = len(index)
    return index


def scale_amount(amount: float) -> float:
    """Map an amount onto [0, 1], saturating at 1000"""
    if amount is None or amount <= 0:
        return 0.0
    return min(float(amount) / AMOUNT_SCALE, 1.0)


def vectorize(tokens: Sequence[str], amount: float, vocabulary: Vocabulary) -> np.ndarray:
    """
    Build the feature vector for one expense.

    Args:
        tokens: Normalized description tokens
        amount: Expense amount
        vocabulary: Token -> slot mapping of the model being fed

    Returns:
        float32 array of length len(vocabulary) + 1
    """
    vector = np.zeros(len(vocabulary) + 1, dtype=np.float32)
    for token in tokens:
        idx = vocabulary.get(token)
        if idx is not None:
            vector[idx] = 1.0
    vector[-1] = scale_amount(amount)
    return vector


def vectorize_many(
    token_lists: Sequence[Sequence[str]],
    amounts: Sequence[float],
    vocabulary: Vocabulary,
) -> np.ndarray:
    """Stack vectors for a batch of expenses into an (n, V + 1) matrix"""
    if len(token_lists) != len(amounts):
        raise ValueError("token_lists and amounts must have the same length")
    matrix = np.zeros((len(token_lists), len(vocabulary) + 1), dtype=np.float32)
    for row, (tokens, amount) in enumerate(zip(token_lists, amounts)):
        matrix[row] = vectorize(tokens, amount, vocabulary)
    return matrix


def one_hot(labels: List[int], width: int) -> np.ndarray:
    """One-hot encode category slots"""
    encoded = np.zeros((len(labels), width), dtype=np.float32)
    encoded[np.arange(len(labels)), labels] = 1.0
    return encoded
