from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from binning import MISSING_BIN, n_bins
from loss_models import TerminalNode


@dataclass(frozen=True)
class SplitCandidate:
    feature: int
    threshold_bin: int
    missing_left: bool
    gain: float


@dataclass
class TreeNode:
    rows: np.ndarray
    depth: int
    weight_sum: float = 0.0
    mean: float = 0.0
    is_leaf: bool = True
    split_feature: int | None = None
    split_bin: int | None = None
    split_threshold: float | None = None
    missing_left: bool = True
    gain: float = 0.0
    left: TreeNode | None = None
    right: TreeNode | None = None
    terminal_index: int | None = None


@dataclass
class TreeBuilderParams:
    interaction_depth: int = 1
    n_minobsinnode: int = 10
    min_split_gain: float = 0.0
    m_features: int | None = None

    def __post_init__(self) -> None:
        if self.interaction_depth < 1:
            raise ValueError("interaction_depth must be >= 1")
        if self.n_minobsinnode < 1:
            raise ValueError("n_minobsinnode must be >= 1")
        if self.min_split_gain < 0.0:
            raise ValueError("min_split_gain must be >= 0")
        if self.m_features is not None and self.m_features < 1:
            raise ValueError("m_features must be >= 1")


class RegressionTree:
    """A fitted tree whose leaves carry TerminalNode predictions."""

    def __init__(self, root: TreeNode, terminal_nodes: list[TerminalNode]) -> None:
        self.root = root
        self.terminal_nodes = terminal_nodes

    @property
    def n_term_nodes(self) -> int:
        return len(self.terminal_nodes)

    def node_assign(self, X_bin: np.ndarray) -> np.ndarray:
        X_bin = np.asarray(X_bin, dtype=np.int32)
        assign = np.empty(X_bin.shape[0], dtype=np.intp)
        stack = [(self.root, np.arange(X_bin.shape[0]))]

        while stack:
            node, rows = stack.pop()
            if node.is_leaf:
                assign[rows] = node.terminal_index
                continue

            col = X_bin[rows, node.split_feature]
            missing = col == MISSING_BIN
            go_left = np.where(missing, node.missing_left, col <= node.split_bin)
            stack.append((node.left, rows[go_left]))
            stack.append((node.right, rows[~go_left]))

        return assign

    def predict_batch(self, X_bin: np.ndarray) -> np.ndarray:
        predictions = np.array([t.prediction for t in self.terminal_nodes], dtype=np.float64)
        return predictions[self.node_assign(X_bin)]


class TreeBuilder:
    """Best-first weighted least-squares tree fit to the working response."""

    def __init__(
        self,
        X_bin: np.ndarray,
        bin_thresholds: list[np.ndarray],
        params: TreeBuilderParams,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.X_bin = np.ascontiguousarray(np.asarray(X_bin, dtype=np.int32))
        self.bin_thresholds = bin_thresholds
        self.params = params
        self.rng = rng if rng is not None else np.random.default_rng(0)
        self.n_samples, self.n_features = self.X_bin.shape

    def _summarise(self, node: TreeNode, z: np.ndarray, weight: np.ndarray) -> None:
        w = weight[node.rows]
        node.weight_sum = float(np.sum(w))
        if node.weight_sum > 0.0:
            node.mean = float(np.sum(w * z[node.rows]) / node.weight_sum)
        else:
            node.mean = 0.0

    def _best_split_for_feature(
        self,
        feature: int,
        rows: np.ndarray,
        wz: np.ndarray,
        w: np.ndarray,
    ) -> SplitCandidate | None:
        size = n_bins(self.bin_thresholds[feature])
        if size < 2:
            return None

        col = self.X_bin[rows, feature]
        missing = col == MISSING_BIN
        present = ~missing
        bins = col[present]

        hist_wz = np.bincount(bins, weights=wz[present], minlength=size)
        hist_w = np.bincount(bins, weights=w[present], minlength=size)
        hist_n = np.bincount(bins, minlength=size)

        left_wz = np.cumsum(hist_wz)[:-1]
        left_w = np.cumsum(hist_w)[:-1]
        left_n = np.cumsum(hist_n)[:-1]

        total_wz, total_w, total_n = float(wz.sum()), float(w.sum()), int(rows.size)
        miss_wz, miss_w, miss_n = float(wz[missing].sum()), float(w[missing].sum()), int(missing.sum())

        best: SplitCandidate | None = None
        policies = (True, False) if miss_n > 0 else (True,)
        for missing_left in policies:
            lwz = left_wz + (miss_wz if missing_left else 0.0)
            lw = left_w + (miss_w if missing_left else 0.0)
            ln = left_n + (miss_n if missing_left else 0)
            rwz, rw, rn = total_wz - lwz, total_w - lw, total_n - ln

            valid = (
                (ln >= self.params.n_minobsinnode)
                & (rn >= self.params.n_minobsinnode)
                & (lw > 0.0)
                & (rw > 0.0)
            )
            if not np.any(valid):
                continue

            with np.errstate(divide="ignore", invalid="ignore"):
                gain = lw * rw / (lw + rw) * (lwz / lw - rwz / rw) ** 2
            gain = np.where(valid, gain, -np.inf)

            idx = int(np.argmax(gain))
            if best is None or gain[idx] > best.gain:
                best = SplitCandidate(
                    feature=feature,
                    threshold_bin=idx,
                    missing_left=missing_left,
                    gain=float(gain[idx]),
                )

        return best

    def _candidate_features(self) -> np.ndarray:
        m = self.params.m_features
        if m is None or m >= self.n_features:
            return np.arange(self.n_features)
        return np.sort(self.rng.choice(self.n_features, size=m, replace=False))

    def _find_best_split(
        self,
        node: TreeNode,
        z: np.ndarray,
        weight: np.ndarray,
    ) -> SplitCandidate | None:
        if node.rows.size < 2 * self.params.n_minobsinnode:
            return None

        w = weight[node.rows]
        wz = w * z[node.rows]
        best: SplitCandidate | None = None
        for feature in self._candidate_features():
            candidate = self._best_split_for_feature(feature, node.rows, wz, w)
            if candidate is not None and (best is None or candidate.gain > best.gain):
                best = candidate

        if best is None or not np.isfinite(best.gain) or best.gain <= self.params.min_split_gain:
            return None
        return best

    def _partition_rows(self, rows: np.ndarray, split: SplitCandidate) -> tuple[np.ndarray, np.ndarray]:
        col = self.X_bin[rows, split.feature]
        if split.missing_left:
            left_mask = (col == MISSING_BIN) | (col <= split.threshold_bin)
        else:
            left_mask = (col != MISSING_BIN) & (col <= split.threshold_bin)
        return rows[left_mask], rows[~left_mask]

    def build_tree(
        self,
        z: np.ndarray,
        weight: np.ndarray,
        in_bag: np.ndarray | None = None,
    ) -> RegressionTree:
        z = np.asarray(z, dtype=np.float64)
        weight = np.asarray(weight, dtype=np.float64)
        if z.shape[0] != self.n_samples or weight.shape[0] != self.n_samples:
            raise ValueError("z and weight must have one entry per row of X_bin")

        if in_bag is None:
            rows = np.arange(self.n_samples)
        else:
            rows = np.flatnonzero(np.asarray(in_bag, dtype=bool))

        root = TreeNode(rows=rows, depth=0)
        self._summarise(root, z, weight)
        candidates = {id(root): (root, self._find_best_split(root, z, weight))}

        for _ in range(self.params.interaction_depth):
            splittable = [(node, split) for node, split in candidates.values() if split is not None]
            if not splittable:
                break
            node, split = max(splittable, key=lambda item: item[1].gain)
            del candidates[id(node)]

            left_rows, right_rows = self._partition_rows(node.rows, split)
            node.is_leaf = False
            node.split_feature = split.feature
            node.split_bin = split.threshold_bin
            node.split_threshold = float(self.bin_thresholds[split.feature][split.threshold_bin])
            node.missing_left = split.missing_left
            node.gain = split.gain

            node.left = TreeNode(rows=left_rows, depth=node.depth + 1)
            node.right = TreeNode(rows=right_rows, depth=node.depth + 1)
            for child in (node.left, node.right):
                self._summarise(child, z, weight)
                candidates[id(child)] = (child, self._find_best_split(child, z, weight))

        terminal_nodes: list[TerminalNode] = []
        stack = [root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                node.terminal_index = len(terminal_nodes)
                terminal_nodes.append(TerminalNode(prediction=node.mean))
                continue
            stack.append(node.right)
            stack.append(node.left)

        return RegressionTree(root=root, terminal_nodes=terminal_nodes)
