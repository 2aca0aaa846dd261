from __future__ import annotations

from dataclasses import dataclass, replace
import logging

import numpy as np

from binning import apply_bins, build_bins
from loss_models import LossModel, get_loss_model
from tree_builder import RegressionTree, TreeBuilder, TreeBuilderParams

logger = logging.getLogger(__name__)


@dataclass
class GBMParams:
    distribution: str = "poisson"
    n_trees: int = 100
    shrinkage: float = 0.001
    interaction_depth: int = 1
    n_minobsinnode: int = 10
    bag_fraction: float = 0.5
    train_fraction: float = 1.0
    max_bins: int = 32
    m_features: int | None = None  # features tried per node; None means all
    cv_folds: int = 0
    verbose: bool = False
    random_state: int = 0

    def __post_init__(self) -> None:
        if self.n_trees < 1:
            raise ValueError("n_trees must be >= 1")
        if self.shrinkage <= 0.0:
            raise ValueError("shrinkage must be > 0")
        if self.interaction_depth < 1:
            raise ValueError("interaction_depth must be >= 1")
        if self.n_minobsinnode < 1:
            raise ValueError("n_minobsinnode must be >= 1")
        if not (0.0 < self.bag_fraction <= 1.0):
            raise ValueError("bag_fraction must be in (0, 1]")
        if not (0.0 < self.train_fraction <= 1.0):
            raise ValueError("train_fraction must be in (0, 1]")
        if self.max_bins < 2:
            raise ValueError("max_bins must be at least 2")
        if self.m_features is not None and self.m_features < 1:
            raise ValueError("m_features must be >= 1")
        if self.cv_folds < 0 or self.cv_folds == 1:
            raise ValueError("cv_folds must be 0 (no cross-validation) or >= 2")


class GBMTrainer:
    """Stochastic gradient boosting driven by a pluggable LossModel."""

    def __init__(self, params: GBMParams | None = None) -> None:
        self.params = params or GBMParams()
        self.rng = np.random.default_rng(self.params.random_state)
        self.loss: LossModel = get_loss_model(self.params.distribution)

        self.bin_thresholds: list[np.ndarray] | None = None
        self.trees: list[RegressionTree] = []
        self.init_f: float = 0.0
        self.n_train: int = 0
        self.train_error: np.ndarray = np.empty(0, dtype=np.float64)
        self.valid_error: np.ndarray = np.empty(0, dtype=np.float64)
        self.oobag_improve: np.ndarray = np.empty(0, dtype=np.float64)
        self.cv_error: np.ndarray | None = None
        self.cv_fitted: np.ndarray | None = None
        self.fit_prediction_: np.ndarray | None = None

    def _check_inputs(
        self,
        X: np.ndarray,
        y: np.ndarray,
        weights: np.ndarray | None,
        offset: np.ndarray | None,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray | None]:
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError("X must be 2D")
        if y.ndim != 1 or y.shape[0] != X.shape[0]:
            raise ValueError("y must be a 1D array with the same number of rows as X")

        if weights is None:
            weights = np.ones_like(y)
        else:
            weights = np.asarray(weights, dtype=np.float64)
            if weights.shape != y.shape:
                raise ValueError("weights must have the same shape as y")
            if np.any(weights < 0.0):
                raise ValueError("weights must be non-negative")

        if offset is not None:
            offset = np.asarray(offset, dtype=np.float64)
            if offset.shape != y.shape:
                raise ValueError("offset must have the same shape as y")

        if self.loss.name == "poisson" and np.any(y < 0.0):
            raise ValueError("Poisson requires a non-negative response")

        return X, y, weights, offset

    def _sample_bag(self, n_in_bag: int) -> np.ndarray:
        in_bag = np.zeros(self.n_train, dtype=bool)
        in_bag[self.rng.choice(self.n_train, size=n_in_bag, replace=False)] = True
        return in_bag

    def _resolve_m_features(self, n_features: int) -> int | None:
        m = self.params.m_features
        if m is None:
            return None
        if m > n_features:
            logger.warning(
                "m_features=%d is greater than the number of features; reset to %d",
                m,
                n_features,
            )
            return n_features
        return m

    def _fold_labels(self, fold_id: np.ndarray | None, n: int) -> np.ndarray | None:
        cv_folds = self.params.cv_folds
        if fold_id is None:
            if cv_folds == 0:
                return None
            return self.rng.permutation(np.arange(self.n_train) % cv_folds)

        fold_id = np.asarray(fold_id)
        if fold_id.shape != (n,):
            raise ValueError("fold_id must have one entry per row of X")
        _, labels = np.unique(fold_id[: self.n_train], return_inverse=True)
        n_folds = int(labels.max()) + 1 if labels.size else 0
        if n_folds < 2:
            raise ValueError("fold_id must define at least two folds over the training rows")
        if cv_folds > 0 and cv_folds != n_folds:
            logger.warning(
                "CV folds changed from %d to %d because of levels in fold_id", cv_folds, n_folds
            )
        return labels

    def _cross_validate(
        self,
        X: np.ndarray,
        y: np.ndarray,
        weights: np.ndarray,
        offset: np.ndarray | None,
        labels: np.ndarray,
    ) -> None:
        n_folds = int(labels.max()) + 1
        cv_error = np.zeros(self.params.n_trees)
        fold_models = []
        total_weight = 0.0

        for fold in range(n_folds):
            held_out = np.flatnonzero(labels == fold)
            kept = np.flatnonzero(labels != fold)
            order = np.concatenate([kept, held_out])
            logger.log(
                logging.INFO if self.params.verbose else logging.DEBUG,
                "CV fold %d of %d: %d training rows, %d held out",
                fold + 1,
                n_folds,
                kept.size,
                held_out.size,
            )

            sub_params = replace(
                self.params,
                cv_folds=0,
                verbose=False,
                random_state=int(self.rng.integers(1, 2**31 - 1)),
            )
            model = GBMTrainer(sub_params)._fit(
                X[order],
                y[order],
                weights[order],
                None if offset is None else offset[order],
                n_train=kept.size,
            )

            fold_weight = float(np.sum(weights[held_out]))
            cv_error += fold_weight * model.valid_error
            total_weight += fold_weight
            fold_models.append((held_out, model))

        with np.errstate(divide="ignore", invalid="ignore"):
            self.cv_error = cv_error / total_weight

        best = self.best_iteration("cv")
        cv_fitted = np.empty(self.n_train, dtype=np.float64)
        for held_out, model in fold_models:
            cv_fitted[held_out] = model.predict_raw(X[held_out], n_trees=best)
        self.cv_fitted = cv_fitted

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        weights: np.ndarray | None = None,
        offset: np.ndarray | None = None,
        fold_id: np.ndarray | None = None,
    ) -> "GBMTrainer":
        """Fit on the first train_fraction of the rows; the rest are the validation set.

        With ``cv_folds`` or ``fold_id``, one extra model per fold is fit on the
        training rows outside the fold. ``cv_error`` is the per-iteration deviance
        on the held-out folds, and ``cv_fitted`` holds the out-of-fold link-scale
        predictions at the best cross-validated iteration.
        """
        X, y, weights, offset = self._check_inputs(X, y, weights, offset)
        n_train = int(np.floor(self.params.train_fraction * X.shape[0]))
        self.n_train = n_train

        labels = self._fold_labels(fold_id, X.shape[0])
        self._fit(X, y, weights, offset, n_train)

        self.cv_error = None
        self.cv_fitted = None
        if labels is not None:
            self._cross_validate(X[:n_train], y[:n_train], weights[:n_train],
                                 None if offset is None else offset[:n_train], labels)
        return self

    def _fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        weights: np.ndarray,
        offset: np.ndarray | None,
        n_train: int,
    ) -> "GBMTrainer":
        p = self.params

        n = X.shape[0]
        self.n_train = n_train
        n_valid = n - self.n_train
        n_in_bag = int(np.floor(p.bag_fraction * self.n_train))
        if n_in_bag <= 2 * p.n_minobsinnode + 1:
            raise ValueError(
                "The data set is too small or the subsampling rate is too large: "
                f"{n_in_bag} in-bag rows cannot hold two nodes of {p.n_minobsinnode}"
            )

        # Bins come from training rows only; validation rows are binned with them.
        self.bin_thresholds = build_bins(X[: self.n_train], max_bins=p.max_bins)
        X_bin = apply_bins(X, self.bin_thresholds)

        builder = TreeBuilder(
            X_bin=X_bin[: self.n_train],
            bin_thresholds=self.bin_thresholds,
            params=TreeBuilderParams(
                interaction_depth=p.interaction_depth,
                n_minobsinnode=p.n_minobsinnode,
                m_features=self._resolve_m_features(X.shape[1]),
            ),
            rng=self.rng,
        )

        self.init_f = self.loss.init_f(y, offset, weights, self.n_train)
        f = np.full(n, self.init_f, dtype=np.float64)

        self.trees = []
        train_error = np.full(p.n_trees, np.nan)
        valid_error = np.full(p.n_trees, np.nan)
        oobag_improve = np.zeros(p.n_trees)

        if p.verbose:
            logger.info("Iter   TrainDeviance   ValidDeviance   StepSize   Improve")

        for i in range(p.n_trees):
            in_bag = self._sample_bag(n_in_bag)
            z = self.loss.compute_working_response(y, offset, f, weights, in_bag, self.n_train)

            tree = builder.build_tree(z, weights[: self.n_train], in_bag)
            node_assign = tree.node_assign(X_bin)
            self.loss.fit_best_constant(
                y,
                offset,
                weights,
                f,
                node_assign,
                self.n_train,
                tree.terminal_nodes,
                tree.n_term_nodes,
                p.n_minobsinnode,
                in_bag,
                None,
            )
            predictions = np.array([t.prediction for t in tree.terminal_nodes], dtype=np.float64)
            f_adj = predictions[node_assign]

            if p.bag_fraction < 1.0:
                oobag_improve[i] = self.loss.bag_improvement(
                    y, offset, weights, f, f_adj, in_bag, p.shrinkage, self.n_train
                )

            f += p.shrinkage * f_adj
            self.trees.append(tree)

            train_error[i] = self.loss.deviance(y, offset, weights, f, self.n_train, 0)
            if n_valid > 0:
                valid_error[i] = self.loss.deviance(
                    y, offset, weights, f, n_valid, self.n_train
                )

            if not np.isfinite(train_error[i]):
                raise FloatingPointError(
                    f"Non-finite training deviance at iteration {i + 1}: {train_error[i]}"
                )

            iteration = i + 1
            if p.verbose and (iteration <= 10 or iteration % 100 == 0 or iteration == p.n_trees):
                logger.info(
                    "%6d %15.4f %15.4f %10.4f %9.4f",
                    iteration,
                    train_error[i],
                    valid_error[i],
                    p.shrinkage,
                    oobag_improve[i],
                )
            else:
                logger.debug("iteration %d train deviance %.6f", iteration, train_error[i])

        self.train_error = train_error
        self.valid_error = valid_error
        self.oobag_improve = oobag_improve
        self.fit_prediction_ = f
        return self

    def predict_raw(
        self,
        X: np.ndarray,
        offset: np.ndarray | None = None,
        n_trees: int | None = None,
    ) -> np.ndarray:
        if self.bin_thresholds is None:
            raise RuntimeError("Model must be fitted before prediction")

        if n_trees is None:
            n_trees = len(self.trees)
        if not (0 <= n_trees <= len(self.trees)):
            raise ValueError(f"n_trees must be between 0 and {len(self.trees)}")

        X_bin = apply_bins(X, self.bin_thresholds)
        pred = np.full(X_bin.shape[0], self.init_f, dtype=np.float64)
        for tree in self.trees[:n_trees]:
            pred += self.params.shrinkage * tree.predict_batch(X_bin)

        if offset is not None:
            pred += np.asarray(offset, dtype=np.float64)
        return pred

    def predict(
        self,
        X: np.ndarray,
        offset: np.ndarray | None = None,
        n_trees: int | None = None,
        kind: str = "link",
    ) -> np.ndarray:
        raw = self.predict_raw(X, offset=offset, n_trees=n_trees)
        if kind == "link":
            return raw
        if kind == "response":
            return self.loss.link_inverse(raw)
        raise ValueError("kind must be one of: link, response")

    def best_iteration(self, method: str = "test") -> int:
        """Number of trees that minimises held-out or cross-validated deviance, or maximises OOB gain."""
        if not self.trees:
            raise RuntimeError("Model must be fitted before choosing an iteration")

        if method == "test":
            if self.n_train == len(self.fit_prediction_):
                raise ValueError("method='test' needs train_fraction < 1")
            return int(np.argmin(self.valid_error)) + 1
        if method == "oob":
            if self.params.bag_fraction >= 1.0:
                raise ValueError("method='oob' needs bag_fraction < 1")
            return int(np.argmax(np.cumsum(self.oobag_improve))) + 1
        if method == "cv":
            if self.cv_error is None:
                raise ValueError("method='cv' needs cv_folds or fold_id at fit time")
            return int(np.argmin(self.cv_error)) + 1
        raise ValueError("method must be one of: test, oob, cv")
