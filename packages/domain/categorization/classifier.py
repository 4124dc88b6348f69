"""
Classifier Model - small feed-forward network trained per user

Architecture:
- Input:  |vocabulary| + 1 (token flags + scaled amount)
- Hidden: 64 ReLU -> 32 ReLU
- Output: |category index| class probabilities (softmax)

Training uses Adam mini-batches on categorical cross-entropy for a fixed
50 epochs. The trailing 20% of the examples is held out for validation and
reported per epoch; it never feeds the weights.
"""
from pathlib import Path
from typing import Sequence, Tuple, Union

import joblib
import numpy as np
import structlog
from sklearn.neural_network import MLPClassifier

from packages.domain.categorization.errors import (
    InsufficientDataError,
    LoadError,
    PredictionError,
    TrainingRuntimeError,
)
from packages.domain.categorization.schemas import TrainingMetrics
from packages.domain.categorization.vectorizer import one_hot

logger = structlog.get_logger()

HIDDEN_LAYER_SIZES = (64, 32)
EPOCHS = 50
BATCH_SIZE = 32
VALIDATION_SPLIT = 0.2
LEARNING_RATE = 0.001
MIN_TRAINING_EXAMPLES = 20
MIN_CATEGORIES = 2


def categorical_cross_entropy(probabilities: np.ndarray, labels: np.ndarray, width: int) -> float:
    """Mean cross-entropy of predicted probabilities against one-hot labels"""
    targets = one_hot(list(labels), width)
    clipped = np.clip(probabilities, 1e-7, 1.0)
    return float(-np.mean(np.sum(targets * np.log(clipped), axis=1)))


class ClassifierModel:
    """
    Wrapper around a fitted scikit-learn MLPClassifier.

    Output column i of the network is category slot i; the network is
    always fitted with classes 0..n_categories-1 so the two never drift.
    """

    def __init__(self, network: MLPClassifier):
        self.network = network

    @property
    def input_width(self) -> int:
        return int(self.network.n_features_in_)

    @property
    def output_width(self) -> int:
        return len(self.network.classes_)

    @classmethod
    def train(
        cls,
        features: np.ndarray,
        labels: Sequence[int],
        n_categories: int,
        random_state: int = 42,
        epochs: int = EPOCHS,
    ) -> Tuple["ClassifierModel", TrainingMetrics]:
        """
        Fit a new network.

        Args:
            features: (n, |V| + 1) matrix of feature vectors
            labels: Category slot of each row
            n_categories: Width of the output layer
            random_state: Seed for weight init and mini-batch shuffling
            epochs: Passes over the training split

        Returns:
            (fitted model, final-epoch metrics)

        Raises:
            InsufficientDataError: fewer than 20 examples or a single category
            TrainingRuntimeError: fitting failed or diverged
        """
        features = np.asarray(features, dtype=np.float32)
        labels = np.asarray(labels, dtype=np.int64)

        if len(labels) < MIN_TRAINING_EXAMPLES:
            raise InsufficientDataError(
                f"need at least {MIN_TRAINING_EXAMPLES} labelled examples, got {len(labels)}"
            )
        if n_categories < MIN_CATEGORIES:
            raise InsufficientDataError(
                f"need at least {MIN_CATEGORIES} categories, got {n_categories}"
            )
        if features.shape[0] != len(labels):
            raise TrainingRuntimeError("features and labels have different lengths")

        split = int(len(labels) * (1 - VALIDATION_SPLIT))
        x_train, y_train = features[:split], labels[:split]
        x_val, y_val = features[split:], labels[split:]

        network = MLPClassifier(
            hidden_layer_sizes=HIDDEN_LAYER_SIZES,
            activation="relu",
            solver="adam",
            batch_size=min(BATCH_SIZE, len(x_train)),
            learning_rate_init=LEARNING_RATE,
            shuffle=True,
            random_state=random_state,
        )
        classes = np.arange(n_categories)

        val_loss = None
        val_accuracy = None
        try:
            for epoch in range(epochs):
                network.partial_fit(x_train, y_train, classes=classes)

                if not np.isfinite(network.loss_):
                    raise TrainingRuntimeError(f"loss diverged at epoch {epoch}")

                if len(y_val):
                    val_proba = network.predict_proba(x_val)
                    val_loss = categorical_cross_entropy(val_proba, y_val, n_categories)
                    val_accuracy = float(np.mean(np.argmax(val_proba, axis=1) == y_val))

                logger.debug("training_epoch_complete",
                             epoch=epoch,
                             loss=float(network.loss_),
                             val_loss=val_loss,
                             val_accuracy=val_accuracy)
        except TrainingRuntimeError:
            raise
        except (ValueError, FloatingPointError, MemoryError) as e:
            raise TrainingRuntimeError(str(e)) from e

        metrics = TrainingMetrics(
            epochs=epochs,
            train_examples=len(y_train),
            validation_examples=len(y_val),
            loss=float(network.loss_),
            train_accuracy=float(network.score(x_train, y_train)),
            validation_loss=val_loss,
            validation_accuracy=val_accuracy,
        )
        return cls(network), metrics

    def predict_proba(self, vector: np.ndarray) -> np.ndarray:
        """
        Class probabilities for one feature vector.

        Raises:
            PredictionError: vector width differs from the trained input width
        """
        vector = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        if vector.shape[1] != self.input_width:
            raise PredictionError(
                f"feature vector has {vector.shape[1]} slots, model expects {self.input_width}"
            )
        return self.network.predict_proba(vector)[0]

    def predict(self, vector: np.ndarray) -> Tuple[int, float]:
        """Return (category slot, probability) of the most likely category"""
        probabilities = self.predict_proba(vector)
        slot = int(np.argmax(probabilities))
        return slot, float(probabilities[slot])

    def save(self, path: Union[str, Path]) -> None:
        joblib.dump(self.network, path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ClassifierModel":
        """Load fitted weights; raises LoadError for anything that is not a fitted network"""
        try:
            network = joblib.load(path)
        except Exception as e:
            raise LoadError(f"cannot read weights from {path}: {e}") from e

        if not isinstance(network, MLPClassifier) or not hasattr(network, "coefs_"):
            raise LoadError(f"{path} does not hold a fitted MLPClassifier")
        return cls(network)
