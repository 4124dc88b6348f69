"""
Categorization errors

None of these reach an API caller: loading falls back to cold start,
training failures are logged, prediction failures become an empty result.
"""


class CategorizationError(Exception):
    """Base class for categorization engine failures"""


class LoadError(CategorizationError):
    """Persisted model artifact is missing a part, corrupt or incompatible"""


class InsufficientDataError(CategorizationError):
    """Not enough labelled examples (or categories) to train a model"""


class TrainingRuntimeError(CategorizationError):
    """Fitting the classifier failed"""


class PredictionError(CategorizationError):
    """Vectorization or inference failed"""
