"""
Tests for the neural scoring model and its persistence
"""
import threading

import numpy as np
import pytest

from policy_engine.database import ModelStore
from policy_engine.neural_scorer import (
    DimensionError,
    NeuralScorer,
    ScoringModel,
    confidence_label,
    initialize_model,
    predict,
    train_on_outcomes,
    train_step,
)
from policy_engine.orchestrator import VerificationOutcome


POSITIVE = [1.0, 0.0, 0.0, 0.0, 0.2, 1.0, 0.0, 0.0, 0.2, 0.1, 1.0,
            1.0, 0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 0.4, 1.0, 0.3, 0.0, 0.0, 0.0]
NEGATIVE = [0.0] * 14 + [1.0] + [0.0] * 5 + [0.1, 0.0, 1.0, 0.0]


def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


@pytest.fixture
def model():
    return initialize_model(rng=np.random.default_rng(42))


class FailingStore:
    """Store whose writes always fail."""

    def __init__(self):
        self.save_attempts = 0

    def load_model(self, model_id):
        return None

    def save_model(self, model_id, payload, generation):
        self.save_attempts += 1
        raise RuntimeError("disk full")

    def add_training_example(self, features, target, domain=None, url=None):
        raise RuntimeError("disk full")

    def get_training_examples(self, limit):
        return []


class TestScoringModel:
    """Test the network math"""

    def test_initial_shapes(self, model):
        assert model.weights_ih.shape == (16, 24)
        assert model.weights_ho.shape == (1, 16)
        assert model.bias_h.shape == (16, 1)
        assert model.bias_o.shape == (1, 1)
        assert model.generation == 0

    @pytest.mark.parametrize("features", [POSITIVE, NEGATIVE, [0.0] * 24, [1.0] * 24])
    def test_predict_is_a_probability(self, model, features):
        score = predict(model, features)
        assert 0.0 < score < 1.0

    @pytest.mark.parametrize("length", [0, 23, 25])
    def test_wrong_feature_length(self, model, length):
        with pytest.raises(DimensionError):
            predict(model, [0.5] * length)
        with pytest.raises(DimensionError):
            train_step(model, [0.5] * length, 1)

    def test_predict_is_deterministic(self, model):
        assert predict(model, POSITIVE) == predict(model, POSITIVE)

    def test_train_step_returns_new_generation(self, model):
        before = model.weights_ih.copy()

        trained = train_step(model, POSITIVE, 1)

        assert trained.generation == 1
        assert model.generation == 0
        np.testing.assert_array_equal(model.weights_ih, before)
        assert not np.array_equal(trained.weights_ih, model.weights_ih)

    def test_train_step_matches_backpropagation(self, model):
        x = np.array(POSITIVE).reshape(-1, 1)
        hidden = sigmoid(model.weights_ih @ x + model.bias_h)
        output = sigmoid(model.weights_ho @ hidden + model.bias_o)
        lr = model.learning_rate

        error = 1.0 - output
        gradient = output * (1 - output) * error * lr
        expected_ho = model.weights_ho + gradient @ hidden.T
        expected_bo = model.bias_o + gradient
        hidden_error = expected_ho.T @ error
        hidden_gradient = hidden * (1 - hidden) * hidden_error * lr
        expected_ih = model.weights_ih + hidden_gradient @ x.T
        expected_bh = model.bias_h + hidden_gradient

        trained = train_step(model, POSITIVE, 1)

        np.testing.assert_allclose(trained.weights_ho, expected_ho)
        np.testing.assert_allclose(trained.bias_o, expected_bo)
        np.testing.assert_allclose(trained.weights_ih, expected_ih)
        np.testing.assert_allclose(trained.bias_h, expected_bh)

    @pytest.mark.parametrize("target", [2, -1, 0.5])
    def test_invalid_target(self, model, target):
        with pytest.raises(ValueError):
            train_step(model, POSITIVE, target)

    def test_positive_training_raises_score(self, model):
        before = predict(model, POSITIVE)
        trained = model
        for _ in range(20):
            trained = train_step(trained, POSITIVE, 1)
        assert predict(trained, POSITIVE) > before
        assert trained.generation == 20

    def test_serialization_preserves_model(self, model):
        restored = ScoringModel.from_dict(model.to_dict())

        np.testing.assert_allclose(restored.weights_ih, model.weights_ih)
        assert restored.generation == model.generation
        assert predict(restored, POSITIVE) == pytest.approx(predict(model, POSITIVE))

    def test_from_dict_rejects_wrong_dimensions(self, model):
        data = model.to_dict()
        data["input_nodes"] = 23
        with pytest.raises(DimensionError):
            ScoringModel.from_dict(data)

    def test_from_dict_rejects_malformed_weights(self, model):
        data = model.to_dict()
        data["weights_ih"] = data["weights_ih"][:-1]
        with pytest.raises(DimensionError):
            ScoringModel.from_dict(data)

    @pytest.mark.parametrize("score,label", [
        (0.95, "high"), (0.02, "high"), (0.75, "medium"), (0.3, "medium"), (0.5, "low"), (0.6, "low"),
    ])
    def test_confidence_label(self, score, label):
        assert confidence_label(score) == label


class TestNeuralScorer:
    """Test the scorer service"""

    def test_load_persists_generation_zero(self, db):
        store = ModelStore(db)
        scorer = NeuralScorer(store, model_id="fresh", rng=np.random.default_rng(1))

        scorer.load()

        persisted = store.load_model("fresh")
        assert persisted is not None
        assert persisted["generation"] == 0

    def test_training_is_persisted_and_reloaded(self, db):
        store = ModelStore(db)
        scorer = NeuralScorer(store, model_id="persisted", rng=np.random.default_rng(2))
        scorer.load()

        scorer.train(POSITIVE, 1, domain="example.com", url="https://example.com/privacy")

        assert store.load_model("persisted")["generation"] == 1
        reloaded = NeuralScorer(store, model_id="persisted")
        assert reloaded.generation == 1
        assert reloaded.predict(POSITIVE) == pytest.approx(scorer.predict(POSITIVE))

        examples = store.get_training_examples(10)
        assert len(examples) == 1
        assert examples[0]["target"] == 1
        assert examples[0]["url"] == "https://example.com/privacy"

    def test_adopts_newer_persisted_generation(self, db):
        store = ModelStore(db)
        first = NeuralScorer(store, model_id="shared", rng=np.random.default_rng(3))
        first.load()
        second = NeuralScorer(store, model_id="shared")
        second.load()

        first.train(POSITIVE, 1)
        first.train(POSITIVE, 1)
        trained = second.train(NEGATIVE, 0)

        assert trained.generation == 3

    def test_save_failure_still_trains(self):
        store = FailingStore()
        scorer = NeuralScorer(store, model_id="unsaved", rng=np.random.default_rng(4))

        trained = scorer.train(POSITIVE, 1)

        assert trained.generation == 1
        assert scorer.generation == 1
        assert store.save_attempts > 0

    def test_concurrent_training_keeps_every_generation(self):
        scorer = NeuralScorer(model=initialize_model(rng=np.random.default_rng(5)), model_id="threads")

        def worker():
            for _ in range(10):
                scorer.train(POSITIVE, 1)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert scorer.generation == 40

    def test_replay_uses_stored_examples(self, db):
        store = ModelStore(db)
        for _ in range(5):
            store.add_training_example(POSITIVE, 1, "example.com", "https://example.com/privacy")
            store.add_training_example(NEGATIVE, 0, "example.com", "https://example.com/shop")
        scorer = NeuralScorer(store, model_id="replayed", rng=np.random.default_rng(6))
        scorer.load()

        report = scorer.replay(limit=100, epochs=3, seed=0)

        assert report.examples_used == 10
        assert report.generation == 30
        assert 0.0 <= report.accuracy <= 1.0
        assert len(store.get_training_examples(100)) == 10

    def test_replay_without_examples(self, db):
        scorer = NeuralScorer(ModelStore(db), model_id="empty", rng=np.random.default_rng(7))
        report = scorer.replay()
        assert report.examples_used == 0
        assert report.generation == 0

    def test_train_on_outcomes_skips_bad_vectors(self):
        scorer = NeuralScorer(model=initialize_model(rng=np.random.default_rng(8)), model_id="outcomes")
        outcomes = [
            VerificationOutcome(url="https://example.com/privacy", features=POSITIVE, label=1, reason="verified"),
            VerificationOutcome(url="https://example.com/shop", features=NEGATIVE, label=0, reason="not_policy"),
            VerificationOutcome(url="https://example.com/bad", features=[0.1] * 5, label=0, reason="not_policy"),
        ]

        trained = train_on_outcomes(scorer, outcomes, domain="example.com")

        assert trained == 2
        assert scorer.generation == 2
