from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np

# Stability bounds for exp(): the clamp keeps f + prediction inside
# [-PREDICTION_CLIP, PREDICTION_CLIP] when no offset is configured.
PREDICTION_CLIP = 19.0
ZERO_NUMERATOR_PREDICTION = -19.0


@dataclass
class TerminalNode:
    prediction: float = 0.0


@dataclass
class NodeScratch:
    """Per-node accumulators reused across fit_best_constant calls."""

    numerator: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    denominator: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    f_max: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    f_min: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))

    def reset(self, n_nodes: int) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        if self.numerator.size < n_nodes:
            self.numerator = np.empty(n_nodes, dtype=np.float64)
            self.denominator = np.empty(n_nodes, dtype=np.float64)
            self.f_max = np.empty(n_nodes, dtype=np.float64)
            self.f_min = np.empty(n_nodes, dtype=np.float64)

        num = self.numerator[:n_nodes]
        den = self.denominator[:n_nodes]
        f_max = self.f_max[:n_nodes]
        f_min = self.f_min[:n_nodes]
        num.fill(0.0)
        den.fill(0.0)
        f_max.fill(-np.inf)
        f_min.fill(np.inf)
        return num, den, f_max, f_min


def _segment(values: np.ndarray, start: int, stop: int) -> np.ndarray:
    return np.asarray(values[start:stop], dtype=np.float64)


def _linear_predictor(
    f: np.ndarray,
    offset: np.ndarray | None,
    start: int,
    stop: int,
) -> np.ndarray:
    eta = _segment(f, start, stop)
    if offset is not None:
        eta = eta + _segment(offset, start, stop)
    return eta


def _weighted_median(values: np.ndarray, weights: np.ndarray) -> float:
    if values.size == 0:
        return float("nan")
    order = np.argsort(values, kind="stable")
    cum_weight = np.cumsum(weights[order])
    idx = int(np.searchsorted(cum_weight, 0.5 * cum_weight[-1], side="left"))
    return float(values[order][min(idx, values.size - 1)])


class LossModel(ABC):
    """Loss-specific operations consumed by the boosting driver.

    Every variant shares one signature per operation; parameters a variant
    has no use for are accepted and ignored. Numeric degeneracies are never
    trapped: they come back as NaN or inf for the caller to inspect.
    """

    name: str = ""

    def __init__(self) -> None:
        self._scratch = NodeScratch()

    def link_inverse(self, eta: np.ndarray) -> np.ndarray:
        return np.asarray(eta, dtype=np.float64)

    @abstractmethod
    def compute_working_response(
        self,
        y: np.ndarray,
        offset: np.ndarray | None,
        f: np.ndarray,
        weight: np.ndarray,
        in_bag: np.ndarray,
        n_train: int,
    ) -> np.ndarray:
        ...

    @abstractmethod
    def init_f(
        self,
        y: np.ndarray,
        offset: np.ndarray | None,
        weight: np.ndarray,
        n: int,
    ) -> float:
        ...

    @abstractmethod
    def deviance(
        self,
        y: np.ndarray,
        offset: np.ndarray | None,
        weight: np.ndarray,
        f: np.ndarray,
        n: int,
        index_offset: int = 0,
    ) -> float:
        ...

    @abstractmethod
    def fit_best_constant(
        self,
        y: np.ndarray,
        offset: np.ndarray | None,
        weight: np.ndarray,
        f: np.ndarray,
        node_assign: np.ndarray,
        n_train: int,
        terminal_nodes: list[TerminalNode | None],
        n_term_nodes: int,
        min_obs_in_node: int,
        in_bag: np.ndarray,
        f_adj: np.ndarray | None,
        index_offset: int = 0,
    ) -> None:
        ...

    @abstractmethod
    def bag_improvement(
        self,
        y: np.ndarray,
        offset: np.ndarray | None,
        weight: np.ndarray,
        f: np.ndarray,
        f_adj: np.ndarray,
        in_bag: np.ndarray,
        step_size: float,
        n_train: int,
    ) -> float:
        ...


class PoissonLoss(LossModel):
    """Poisson deviance with a log link."""

    name = "poisson"

    def link_inverse(self, eta: np.ndarray) -> np.ndarray:
        with np.errstate(over="ignore"):
            return np.exp(np.asarray(eta, dtype=np.float64))

    def compute_working_response(self, y, offset, f, weight, in_bag, n_train):
        eta = _linear_predictor(f, offset, 0, n_train)
        with np.errstate(over="ignore", invalid="ignore"):
            return _segment(y, 0, n_train) - np.exp(eta)

    def init_f(self, y, offset, weight, n):
        w = _segment(weight, 0, n)
        total = np.sum(w * _segment(y, 0, n))
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            if offset is None:
                denom = np.sum(w)
            else:
                denom = np.sum(w * np.exp(_segment(offset, 0, n)))
            return float(np.log(total / denom))

    def deviance(self, y, offset, weight, f, n, index_offset=0):
        stop = index_offset + n
        y = _segment(y, index_offset, stop)
        w = _segment(weight, index_offset, stop)
        eta = _linear_predictor(f, offset, index_offset, stop)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            loglik = np.sum(w * (y * eta - np.exp(eta)))
            return float(-2.0 * loglik / np.sum(w))

    def fit_best_constant(
        self,
        y,
        offset,
        weight,
        f,
        node_assign,
        n_train,
        terminal_nodes,
        n_term_nodes,
        min_obs_in_node,
        in_bag,
        f_adj,
        index_offset=0,
    ):
        num, den, f_max, f_min = self._scratch.reset(n_term_nodes)

        nodes = np.asarray(node_assign[:n_train], dtype=np.intp)
        bag = np.asarray(in_bag[:n_train], dtype=bool)
        w = _segment(weight, 0, n_train)
        scores = _segment(f, 0, n_train)
        eta = _linear_predictor(f, offset, 0, n_train)

        with np.errstate(over="ignore", invalid="ignore"):
            np.add.at(num, nodes[bag], w[bag] * _segment(y, 0, n_train)[bag])
            np.add.at(den, nodes[bag], w[bag] * np.exp(eta[bag]))

        # Bounds are only tracked without an offset; with one, the clamp is a no-op.
        if offset is None:
            with np.errstate(invalid="ignore"):
                np.maximum.at(f_max, nodes, scores)
                np.minimum.at(f_min, nodes, scores)

        for i_node in range(n_term_nodes):
            node = terminal_nodes[i_node]
            if node is None:
                continue

            if num[i_node] == 0.0:
                prediction = ZERO_NUMERATOR_PREDICTION
            elif den[i_node] == 0.0:
                prediction = 0.0
            else:
                with np.errstate(divide="ignore", invalid="ignore"):
                    prediction = float(np.log(num[i_node] / den[i_node]))

            # NaN bounds propagate into the prediction.
            with np.errstate(invalid="ignore"):
                prediction = np.minimum(prediction, PREDICTION_CLIP - f_max[i_node])
                prediction = np.maximum(prediction, -PREDICTION_CLIP - f_min[i_node])
            node.prediction = float(prediction)

    def bag_improvement(self, y, offset, weight, f, f_adj, in_bag, step_size, n_train):
        oob = ~np.asarray(in_bag[:n_train], dtype=bool)
        y = _segment(y, 0, n_train)[oob]
        w = _segment(weight, 0, n_train)[oob]
        eta = _linear_predictor(f, offset, 0, n_train)[oob]
        step = step_size * _segment(f_adj, 0, n_train)[oob]

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            gain = np.sum(w * (y * step - np.exp(eta + step) + np.exp(eta)))
            return float(gain / np.sum(w))


class GaussianLoss(LossModel):
    """Squared error with an identity link."""

    name = "gaussian"

    def compute_working_response(self, y, offset, f, weight, in_bag, n_train):
        return _segment(y, 0, n_train) - _linear_predictor(f, offset, 0, n_train)

    def init_f(self, y, offset, weight, n):
        w = _segment(weight, 0, n)
        target = _segment(y, 0, n)
        if offset is not None:
            target = target - _segment(offset, 0, n)
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.sum(w * target) / np.sum(w))

    def deviance(self, y, offset, weight, f, n, index_offset=0):
        stop = index_offset + n
        resid = _segment(y, index_offset, stop) - _linear_predictor(f, offset, index_offset, stop)
        w = _segment(weight, index_offset, stop)
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.sum(w * resid * resid) / np.sum(w))

    def fit_best_constant(
        self,
        y,
        offset,
        weight,
        f,
        node_assign,
        n_train,
        terminal_nodes,
        n_term_nodes,
        min_obs_in_node,
        in_bag,
        f_adj,
        index_offset=0,
    ):
        num, den, _, _ = self._scratch.reset(n_term_nodes)

        nodes = np.asarray(node_assign[:n_train], dtype=np.intp)
        bag = np.asarray(in_bag[:n_train], dtype=bool)
        w = _segment(weight, 0, n_train)
        resid = _segment(y, 0, n_train) - _linear_predictor(f, offset, 0, n_train)

        np.add.at(num, nodes[bag], w[bag] * resid[bag])
        np.add.at(den, nodes[bag], w[bag])

        for i_node in range(n_term_nodes):
            node = terminal_nodes[i_node]
            if node is None:
                continue
            node.prediction = float(num[i_node] / den[i_node]) if den[i_node] != 0.0 else 0.0

    def bag_improvement(self, y, offset, weight, f, f_adj, in_bag, step_size, n_train):
        oob = ~np.asarray(in_bag[:n_train], dtype=bool)
        resid = (_segment(y, 0, n_train) - _linear_predictor(f, offset, 0, n_train))[oob]
        w = _segment(weight, 0, n_train)[oob]
        step = step_size * _segment(f_adj, 0, n_train)[oob]

        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.sum(w * step * (2.0 * resid - step)) / np.sum(w))


class LaplaceLoss(LossModel):
    """Absolute error; leaves take the weighted median residual."""

    name = "laplace"

    def compute_working_response(self, y, offset, f, weight, in_bag, n_train):
        resid = _segment(y, 0, n_train) - _linear_predictor(f, offset, 0, n_train)
        return np.sign(resid)

    def init_f(self, y, offset, weight, n):
        target = _segment(y, 0, n)
        if offset is not None:
            target = target - _segment(offset, 0, n)
        return _weighted_median(target, _segment(weight, 0, n))

    def deviance(self, y, offset, weight, f, n, index_offset=0):
        stop = index_offset + n
        resid = _segment(y, index_offset, stop) - _linear_predictor(f, offset, index_offset, stop)
        w = _segment(weight, index_offset, stop)
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.sum(w * np.abs(resid)) / np.sum(w))

    def fit_best_constant(
        self,
        y,
        offset,
        weight,
        f,
        node_assign,
        n_train,
        terminal_nodes,
        n_term_nodes,
        min_obs_in_node,
        in_bag,
        f_adj,
        index_offset=0,
    ):
        nodes = np.asarray(node_assign[:n_train], dtype=np.intp)
        bag = np.asarray(in_bag[:n_train], dtype=bool)
        w = _segment(weight, 0, n_train)
        resid = _segment(y, 0, n_train) - _linear_predictor(f, offset, 0, n_train)

        counts = np.bincount(nodes[bag], minlength=n_term_nodes)
        for i_node in range(n_term_nodes):
            node = terminal_nodes[i_node]
            if node is None or counts[i_node] < max(min_obs_in_node, 1):
                continue
            members = bag & (nodes == i_node)
            node.prediction = _weighted_median(resid[members], w[members])

    def bag_improvement(self, y, offset, weight, f, f_adj, in_bag, step_size, n_train):
        oob = ~np.asarray(in_bag[:n_train], dtype=bool)
        resid = (_segment(y, 0, n_train) - _linear_predictor(f, offset, 0, n_train))[oob]
        w = _segment(weight, 0, n_train)[oob]
        step = step_size * _segment(f_adj, 0, n_train)[oob]

        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.sum(w * (np.abs(resid) - np.abs(resid - step))) / np.sum(w))


_LOSS_MODELS: dict[str, type[LossModel]] = {
    PoissonLoss.name: PoissonLoss,
    GaussianLoss.name: GaussianLoss,
    LaplaceLoss.name: LaplaceLoss,
}


def get_loss_model(name: str) -> LossModel:
    try:
        return _LOSS_MODELS[name]()
    except KeyError:
        raise ValueError(f"Unsupported distribution: {name}") from None
