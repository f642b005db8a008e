"""
Neural Scoring Module

A small feed-forward network (24 -> 16 -> 1, sigmoid activations) that
predicts how likely a candidate link is to point at a policy document, and
learns online from verification outcomes.

Model state is an immutable-by-convention ScoringModel value. Training builds
a new value and swaps it in under a per-model-key lock, so concurrent
predictions always read one consistent snapshot.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import numpy as np

from policy_engine.config import settings
from policy_engine.utils import retry

logger = logging.getLogger(__name__)

# Keeps predictions strictly inside (0, 1) once the sigmoid saturates
OUTPUT_EPSILON = 1e-12


class DimensionError(ValueError):
    """Feature vector or persisted weights do not match the model dimensions."""


class ModelPersistence(Protocol):
    """What the scorer needs from a weight store (see database.ModelStore)."""

    def load_model(self, model_id: str) -> Optional[dict]: ...

    def save_model(self, model_id: str, payload: dict, generation: int) -> None: ...

    def add_training_example(self, features: List[float], target: int,
                             domain: Optional[str] = None, url: Optional[str] = None) -> None: ...

    def get_training_examples(self, limit: int) -> List[dict]: ...


# ============================================================================
# Model Value
# ============================================================================

@dataclass
class ScoringModel:
    """Weights, biases and generation of one network."""
    weights_ih: np.ndarray
    weights_ho: np.ndarray
    bias_h: np.ndarray
    bias_o: np.ndarray
    input_nodes: int = 24
    hidden_nodes: int = 16
    output_nodes: int = 1
    learning_rate: float = 0.1
    generation: int = 0
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        expected = {
            "weights_ih": (self.hidden_nodes, self.input_nodes),
            "weights_ho": (self.output_nodes, self.hidden_nodes),
            "bias_h": (self.hidden_nodes, 1),
            "bias_o": (self.output_nodes, 1),
        }
        for name, shape in expected.items():
            value = np.asarray(getattr(self, name), dtype=float)
            if value.shape != shape:
                raise DimensionError(f"{name} has shape {value.shape}, expected {shape}")
            setattr(self, name, value)

    def copy(self) -> "ScoringModel":
        return ScoringModel(
            weights_ih=self.weights_ih.copy(),
            weights_ho=self.weights_ho.copy(),
            bias_h=self.bias_h.copy(),
            bias_o=self.bias_o.copy(),
            input_nodes=self.input_nodes,
            hidden_nodes=self.hidden_nodes,
            output_nodes=self.output_nodes,
            learning_rate=self.learning_rate,
            generation=self.generation,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible document."""
        return {
            "input_nodes": self.input_nodes,
            "hidden_nodes": self.hidden_nodes,
            "output_nodes": self.output_nodes,
            "learning_rate": self.learning_rate,
            "generation": self.generation,
            "weights_ih": self.weights_ih.tolist(),
            "weights_ho": self.weights_ho.tolist(),
            "bias_h": self.bias_h.tolist(),
            "bias_o": self.bias_o.tolist(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict, input_nodes: Optional[int] = None,
                  hidden_nodes: Optional[int] = None, output_nodes: Optional[int] = None) -> "ScoringModel":
        """
        Rebuild a model from its serialized form.

        Args:
            data: Document produced by to_dict
            input_nodes, hidden_nodes, output_nodes: Expected dimensions; the
                persisted dimensions must match them

        Raises:
            DimensionError: Persisted shapes do not match the expected ones
        """
        dims = (
            input_nodes or settings.model_input_nodes,
            hidden_nodes or settings.model_hidden_nodes,
            output_nodes or settings.model_output_nodes,
        )
        stored = (data.get("input_nodes"), data.get("hidden_nodes"), data.get("output_nodes"))
        if stored != dims:
            raise DimensionError(f"Persisted model dimensions {stored} do not match {dims}")

        updated_at = data.get("updated_at")
        try:
            return cls(
                weights_ih=np.array(data["weights_ih"], dtype=float),
                weights_ho=np.array(data["weights_ho"], dtype=float),
                bias_h=np.array(data["bias_h"], dtype=float),
                bias_o=np.array(data["bias_o"], dtype=float),
                input_nodes=dims[0],
                hidden_nodes=dims[1],
                output_nodes=dims[2],
                learning_rate=float(data.get("learning_rate", settings.learning_rate)),
                generation=int(data.get("generation", 0)),
                updated_at=datetime.fromisoformat(updated_at) if updated_at else datetime.utcnow(),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, DimensionError):
                raise
            raise DimensionError(f"Persisted model is malformed: {e}") from e


# ============================================================================
# Network Math
# ============================================================================

def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def dsigmoid(y):
    """Derivative of the sigmoid, given its output y."""
    return y * (1.0 - y)


def initialize_model(
    input_nodes: Optional[int] = None,
    hidden_nodes: Optional[int] = None,
    output_nodes: Optional[int] = None,
    learning_rate: Optional[float] = None,
    rng: Optional[np.random.Generator] = None,
) -> ScoringModel:
    """
    Create a fresh generation-0 model.

    Weights and biases are drawn from N(0, 1/sqrt(fan_in)) per layer.
    """
    input_nodes = input_nodes or settings.model_input_nodes
    hidden_nodes = hidden_nodes or settings.model_hidden_nodes
    output_nodes = output_nodes or settings.model_output_nodes
    rng = rng or np.random.default_rng()

    scale_ih = 1.0 / np.sqrt(input_nodes)
    scale_ho = 1.0 / np.sqrt(hidden_nodes)
    return ScoringModel(
        weights_ih=rng.normal(0.0, scale_ih, (hidden_nodes, input_nodes)),
        weights_ho=rng.normal(0.0, scale_ho, (output_nodes, hidden_nodes)),
        bias_h=rng.normal(0.0, scale_ih, (hidden_nodes, 1)),
        bias_o=rng.normal(0.0, scale_ho, (output_nodes, 1)),
        input_nodes=input_nodes,
        hidden_nodes=hidden_nodes,
        output_nodes=output_nodes,
        learning_rate=learning_rate if learning_rate is not None else settings.learning_rate,
        generation=0,
    )


def _as_column(model: ScoringModel, features: Sequence[float]) -> np.ndarray:
    if len(features) != model.input_nodes:
        raise DimensionError(
            f"Expected {model.input_nodes} features, got {len(features)}"
        )
    return np.asarray(features, dtype=float).reshape(-1, 1)


def forward(model: ScoringModel, features: Sequence[float]):
    """Run the forward pass, returning (inputs, hidden, output) column vectors."""
    inputs = _as_column(model, features)
    hidden = sigmoid(model.weights_ih @ inputs + model.bias_h)
    output = sigmoid(model.weights_ho @ hidden + model.bias_o)
    return inputs, hidden, output


def predict(model: ScoringModel, features: Sequence[float]) -> float:
    """Probability in (0, 1) that the features describe a policy link."""
    _, _, output = forward(model, features)
    return float(np.clip(output[0, 0], OUTPUT_EPSILON, 1.0 - OUTPUT_EPSILON))


def train_step(model: ScoringModel, features: Sequence[float], target: int) -> ScoringModel:
    """
    One backpropagation step.

    Returns a new model with generation incremented by one; the input model
    is left untouched.

    Raises:
        DimensionError: Wrong feature length
        ValueError: Target outside {0, 1}
    """
    if target not in (0, 1):
        raise ValueError(f"Training target must be 0 or 1, got {target!r}")

    inputs, hidden, output = forward(model, features)
    trained = model.copy()
    lr = trained.learning_rate

    output_error = target - output
    gradient = dsigmoid(output) * output_error * lr
    trained.weights_ho += gradient @ hidden.T
    trained.bias_o += gradient

    # Hidden error is propagated through the already-updated output weights
    hidden_error = trained.weights_ho.T @ output_error
    hidden_gradient = dsigmoid(hidden) * hidden_error * lr
    trained.weights_ih += hidden_gradient @ inputs.T
    trained.bias_h += hidden_gradient

    trained.generation = model.generation + 1
    trained.updated_at = datetime.utcnow()
    return trained


def confidence_label(score: float) -> str:
    """Map a score to high / medium / low by its distance from 0.5."""
    distance = abs(score - 0.5)
    if distance > 0.35:
        return "high"
    if distance > 0.15:
        return "medium"
    return "low"


# ============================================================================
# Scorer Service
# ============================================================================

_locks_guard = threading.Lock()
_model_locks: Dict[str, threading.Lock] = {}


def _lock_for(model_id: str) -> threading.Lock:
    with _locks_guard:
        if model_id not in _model_locks:
            _model_locks[model_id] = threading.Lock()
        return _model_locks[model_id]


@dataclass
class ReplayReport:
    """Summary of a replay over stored training examples."""
    generation: int
    examples_used: int
    accuracy: float


class NeuralScorer:
    """Thread-safe predict/train front-end over a persisted ScoringModel."""

    def __init__(
        self,
        store: Optional[ModelPersistence] = None,
        model_id: Optional[str] = None,
        model: Optional[ScoringModel] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Initialize scorer.

        Args:
            store: Weight store; None keeps the model in memory only
            model_id: Logical key the weights are persisted under
            model: Pre-built model (skips loading)
            rng: Random generator used for first-time initialization
        """
        self.store = store
        self.model_id = model_id or settings.model_id
        self._rng = rng
        self._lock = _lock_for(self.model_id)
        self._model: Optional[ScoringModel] = model

    @property
    def model(self) -> ScoringModel:
        """Current snapshot, loaded or initialized on first access."""
        if self._model is None:
            self.load()
        return self._model

    @property
    def generation(self) -> int:
        return self.model.generation

    def load(self) -> ScoringModel:
        """
        Load persisted weights, or initialize and persist generation 0.

        Raises:
            DimensionError: Persisted weights have the wrong shape
        """
        with self._lock:
            persisted = self.store.load_model(self.model_id) if self.store else None
            if persisted is not None:
                self._model = ScoringModel.from_dict(persisted)
                logger.info(f"Loaded model '{self.model_id}' at generation {self._model.generation}")
            else:
                self._model = initialize_model(rng=self._rng)
                logger.info(f"Initialized new model '{self.model_id}'")
                self._save(self._model)
            return self._model

    def predict(self, features: Sequence[float]) -> float:
        """
        Score a feature vector.

        Raises:
            DimensionError: Wrong feature length
        """
        return predict(self.model, features)

    def train(
        self,
        features: Sequence[float],
        target: int,
        domain: Optional[str] = None,
        url: Optional[str] = None,
        record: bool = True,
    ) -> ScoringModel:
        """
        Train on one labeled example and persist the result.

        Args:
            features: Feature vector of the candidate
            target: 1 when the candidate verified as a policy, else 0
            domain: Source domain (recorded with the example)
            url: Candidate URL (recorded with the example)
            record: Store the example for later replay

        Returns:
            The new model snapshot
        """
        if self._model is None:
            self.load()

        with self._lock:
            current = self._refresh(self._model)
            trained = train_step(current, features, target)
            self._model = trained
            self._save(trained)

        if record and self.store is not None:
            try:
                self.store.add_training_example(list(features), int(target), domain, url)
            except Exception as e:
                logger.warning(f"Could not record training example for {url}: {e}")

        logger.debug(f"Trained '{self.model_id}' to generation {trained.generation} (target={target})")
        return trained

    def replay(self, limit: int = 10000, epochs: int = 1, seed: Optional[int] = None) -> ReplayReport:
        """
        Re-train on stored examples.

        Args:
            limit: Most recent examples to use
            epochs: Passes over the shuffled examples
            seed: Shuffle seed

        Returns:
            ReplayReport with the final generation and training-set accuracy
        """
        if self.store is None:
            return ReplayReport(self.generation, 0, 0.0)

        examples = self.store.get_training_examples(limit)
        if not examples:
            logger.info("No training data to replay")
            return ReplayReport(self.generation, 0, 0.0)

        shuffler = random.Random(seed)
        for _ in range(epochs):
            shuffled = list(examples)
            shuffler.shuffle(shuffled)
            for example in shuffled:
                try:
                    self.train(example["features"], int(example["target"]), record=False)
                except DimensionError as e:
                    logger.warning(f"Skipping stored example with bad features: {e}")

        correct = 0
        for example in examples:
            try:
                predicted = 1 if self.predict(example["features"]) > 0.5 else 0
            except DimensionError:
                continue
            if predicted == int(example["target"]):
                correct += 1
        accuracy = correct / len(examples)

        logger.info(
            f"Replayed {len(examples)} examples x{epochs}; "
            f"generation {self.generation}, accuracy {accuracy:.1%}"
        )
        return ReplayReport(self.generation, len(examples), accuracy)

    def _refresh(self, current: ScoringModel) -> ScoringModel:
        """Adopt a newer persisted generation written by another process."""
        if self.store is None:
            return current
        try:
            persisted = self.store.load_model(self.model_id)
        except Exception as e:
            logger.warning(f"Could not reload model '{self.model_id}', using in-memory copy: {e}")
            return current
        if persisted is not None and int(persisted.get("generation", 0)) > current.generation:
            return ScoringModel.from_dict(persisted)
        return current

    def _save(self, model: ScoringModel):
        if self.store is None:
            return
        try:
            self._persist(model)
        except Exception as e:
            logger.error(f"Failed to persist model '{self.model_id}' generation {model.generation}: {e}")

    @retry(max_attempts=3, delay=0.1, backoff=2.0)
    def _persist(self, model: ScoringModel):
        self.store.save_model(self.model_id, model.to_dict(), model.generation)


def train_on_outcomes(scorer: NeuralScorer, outcomes: Iterable, domain: Optional[str] = None) -> int:
    """
    Feed labeled verification outcomes to the scorer.

    Returns:
        Number of outcomes trained on
    """
    trained = 0
    for outcome in outcomes:
        try:
            scorer.train(outcome.features, outcome.label, domain=domain, url=outcome.url)
            trained += 1
        except (DimensionError, ValueError) as e:
            logger.warning(f"Skipping training outcome for {outcome.url}: {e}")
    return trained
