import numpy as np
import pytest

from packages.domain.categorization.classifier import ClassifierModel
from packages.domain.categorization.errors import (
    InsufficientDataError,
    LoadError,
    PredictionError,
)
from packages.domain.categorization.text_normalizer import normalize
from packages.domain.categorization.vectorizer import (
    build_category_index,
    build_vocabulary,
    vectorize,
    vectorize_many,
)

from conftest import TEMPLATES


def corpus(count):
    rows = [TEMPLATES[i % len(TEMPLATES)] for i in range(count)]
    token_lists = [normalize(description) for description, _, _ in rows]
    vocabulary = build_vocabulary(token_lists)
    category_index = build_category_index(category for _, _, category in rows)
    features = vectorize_many(token_lists, [amount for _, amount, _ in rows], vocabulary)
    labels = [category_index[category] for _, _, category in rows]
    return features, labels, vocabulary, category_index


@pytest.fixture(scope="module")
def trained():
    features, labels, vocabulary, category_index = corpus(30)
    model, metrics = ClassifierModel.train(features, labels, len(category_index), random_state=3)
    return model, metrics, vocabulary, category_index


def test_refuses_fewer_than_twenty_examples():
    features, labels, _, category_index = corpus(19)
    with pytest.raises(InsufficientDataError):
        ClassifierModel.train(features, labels, len(category_index))


def test_refuses_single_category():
    features = np.ones((25, 4), dtype=np.float32)
    with pytest.raises(InsufficientDataError):
        ClassifierModel.train(features, [0] * 25, 1)


def test_widths_follow_vocabulary_and_categories(trained):
    model, _, vocabulary, category_index = trained
    assert model.input_width == len(vocabulary) + 1
    assert model.output_width == len(category_index)


def test_probabilities_form_a_distribution(trained):
    model, _, vocabulary, _ = trained
    probabilities = model.predict_proba(vectorize(normalize("Uber ride"), 20.0, vocabulary))
    assert probabilities.shape == (3,)
    assert probabilities.sum() == pytest.approx(1.0, abs=1e-5)
    slot, probability = model.predict(vectorize(normalize("Uber ride"), 20.0, vocabulary))
    assert 0 <= slot < 3
    assert 0.0 <= probability <= 1.0


def test_metrics_report_validation_split(trained):
    _, metrics, _, _ = trained
    assert metrics.epochs == 50
    assert metrics.train_examples == 24
    assert metrics.validation_examples == 6
    assert np.isfinite(metrics.loss)
    assert metrics.validation_accuracy is not None


def test_width_mismatch_is_a_prediction_error(trained):
    model, _, vocabulary, _ = trained
    with pytest.raises(PredictionError):
        model.predict(np.zeros(len(vocabulary) + 3, dtype=np.float32))


def test_same_seed_same_weights():
    features, labels, vocabulary, category_index = corpus(24)
    first, _ = ClassifierModel.train(features, labels, len(category_index), random_state=11)
    second, _ = ClassifierModel.train(features, labels, len(category_index), random_state=11)
    vector = vectorize(normalize("Walmart groceries"), 80.0, vocabulary)
    np.testing.assert_allclose(first.predict_proba(vector), second.predict_proba(vector))


def test_load_rejects_non_model_file(tmp_path):
    path = tmp_path / "model.joblib"
    path.write_bytes(b"not a pickle")
    with pytest.raises(LoadError):
        ClassifierModel.load(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(LoadError):
        ClassifierModel.load(tmp_path / "absent.joblib")
