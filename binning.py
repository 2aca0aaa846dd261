import numpy as np

MISSING_BIN = -1


def _as_matrix(X: np.ndarray) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError("X must be a 2D array")
    return X


def _feature_thresholds(column: np.ndarray, max_bins: int) -> np.ndarray:
    finite = column[np.isfinite(column)]
    values = np.unique(finite)
    if values.size <= 1:
        return np.empty(0, dtype=np.float64)

    if values.size <= max_bins:
        # One bin per distinct value.
        return (values[:-1] + values[1:]) * 0.5

    probs = np.linspace(0.0, 1.0, max_bins + 1)[1:-1]
    return np.unique(np.quantile(finite, probs, method="linear"))


def build_bins(X: np.ndarray, max_bins: int = 32) -> list[np.ndarray]:
    """Ascending split thresholds per feature, computed from the training rows."""
    if max_bins < 2:
        raise ValueError("max_bins must be at least 2")

    X = _as_matrix(X)
    return [
        np.asarray(_feature_thresholds(X[:, j], max_bins), dtype=np.float64)
        for j in range(X.shape[1])
    ]


def n_bins(thresholds: np.ndarray) -> int:
    return int(thresholds.size) + 1


def apply_bins(X: np.ndarray, bin_thresholds: list[np.ndarray]) -> np.ndarray:
    """Map raw values to int32 bin codes; non-finite values get MISSING_BIN."""
    X = _as_matrix(X)
    if X.shape[1] != len(bin_thresholds):
        raise ValueError("bin_thresholds length must match number of features")

    X_bin = np.full(X.shape, MISSING_BIN, dtype=np.int32)
    finite = np.isfinite(X)
    for j, thresholds in enumerate(bin_thresholds):
        mask = finite[:, j]
        X_bin[mask, j] = np.searchsorted(thresholds, X[mask, j], side="right")

    return np.ascontiguousarray(X_bin)
