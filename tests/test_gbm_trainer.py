import logging

import numpy as np
import pytest

from gbm_trainer import GBMParams, GBMTrainer


def _poisson_data(n=1500, seed=7):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 3))
    log_mean = 0.3 + 0.8 * (X[:, 0] > 0) - 0.5 * (X[:, 1] > 0.5)
    y = rng.poisson(np.exp(log_mean)).astype(np.float64)
    return X, y, log_mean


def test_poisson_boosting_reduces_deviance():
    X, y, _ = _poisson_data()
    params = GBMParams(
        n_trees=60,
        shrinkage=0.1,
        interaction_depth=2,
        n_minobsinnode=10,
        bag_fraction=0.5,
        train_fraction=0.8,
        random_state=1,
    )
    model = GBMTrainer(params).fit(X, y)

    n_train = int(0.8 * X.shape[0])
    assert model.n_train == n_train
    assert np.isclose(model.init_f, np.log(np.mean(y[:n_train])))
    assert len(model.trees) == 60
    assert model.train_error[-1] < model.train_error[0]
    assert np.all(np.isfinite(model.valid_error))
    assert model.valid_error[-1] < model.valid_error[0]
    assert 1 <= model.best_iteration("test") <= 60
    assert 1 <= model.best_iteration("oob") <= 60


def test_predict_matches_fit_and_response_is_positive():
    X, y, _ = _poisson_data(n=600)
    params = GBMParams(n_trees=20, shrinkage=0.1, interaction_depth=2, random_state=3)
    model = GBMTrainer(params).fit(X, y)

    assert np.allclose(model.predict_raw(X), model.fit_prediction_)
    response = model.predict(X, kind="response")
    assert np.all(response > 0.0)
    assert np.allclose(response, np.exp(model.fit_prediction_))
    assert np.allclose(model.predict_raw(X, n_trees=0), model.init_f)


def test_offset_shifts_predictions_and_init():
    X, y, _ = _poisson_data(n=800, seed=11)
    exposure = np.full(y.shape[0], 2.0)
    offset = np.log(exposure)
    params = GBMParams(n_trees=10, shrinkage=0.1, random_state=0)
    model = GBMTrainer(params).fit(X, y, offset=offset)

    assert np.isclose(model.init_f, np.log(np.mean(y) / 2.0))
    raw = model.predict_raw(X)
    assert np.allclose(model.predict_raw(X, offset=offset), raw + offset)


def test_full_bag_records_no_oob_improvement():
    X, y, _ = _poisson_data(n=400)
    model = GBMTrainer(GBMParams(n_trees=5, shrinkage=0.1, bag_fraction=1.0)).fit(X, y)

    assert np.all(model.oobag_improve == 0.0)
    assert np.all(np.isnan(model.valid_error))
    with pytest.raises(ValueError):
        model.best_iteration("oob")
    with pytest.raises(ValueError):
        model.best_iteration("test")


def test_gaussian_distribution_uses_same_driver():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(500, 2))
    y = 3.0 * (X[:, 0] > 0) + 0.1 * rng.normal(size=500)
    params = GBMParams(distribution="gaussian", n_trees=30, shrinkage=0.2, random_state=2)
    model = GBMTrainer(params).fit(X, y)

    assert model.train_error[-1] < model.train_error[0]
    assert np.allclose(model.predict(X, kind="response"), model.predict_raw(X))


def test_verbose_logs_progress_table(caplog):
    X, y, _ = _poisson_data(n=300)
    params = GBMParams(n_trees=3, shrinkage=0.1, verbose=True)
    with caplog.at_level(logging.INFO, logger="gbm_trainer"):
        GBMTrainer(params).fit(X, y)

    assert "TrainDeviance" in caplog.text
    assert len([r for r in caplog.records if r.levelno == logging.INFO]) == 4


def test_input_validation():
    X, y, _ = _poisson_data(n=100)
    trainer = GBMTrainer(GBMParams(n_trees=2))

    with pytest.raises(RuntimeError):
        trainer.predict_raw(X)
    with pytest.raises(ValueError, match="non-negative"):
        trainer.fit(X, -y - 1.0)
    with pytest.raises(ValueError):
        trainer.fit(X, y[:-1])
    with pytest.raises(ValueError):
        trainer.fit(X, y, weights=-np.ones_like(y))
    with pytest.raises(ValueError, match="too small"):
        GBMTrainer(GBMParams(n_minobsinnode=40)).fit(X, y)


def test_unknown_distribution_rejected():
    with pytest.raises(ValueError):
        GBMTrainer(GBMParams(distribution="bernoulli"))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"n_trees": 0},
        {"shrinkage": 0.0},
        {"bag_fraction": 0.0},
        {"bag_fraction": 1.5},
        {"train_fraction": 0.0},
        {"max_bins": 1},
        {"interaction_depth": 0},
        {"m_features": 0},
        {"cv_folds": 1},
        {"cv_folds": -2},
    ],
)
def test_gbm_params_validation(kwargs):
    with pytest.raises(ValueError):
        GBMParams(**kwargs)


def test_cross_validation_records_fold_error():
    X, y, _ = _poisson_data(n=600, seed=5)
    params = GBMParams(n_trees=25, shrinkage=0.1, interaction_depth=2, cv_folds=3, random_state=4)
    model = GBMTrainer(params).fit(X, y)

    assert model.cv_error.shape == (25,)
    assert np.all(np.isfinite(model.cv_error))
    assert model.cv_error[-1] < model.cv_error[0]
    best = model.best_iteration("cv")
    assert 1 <= best <= 25
    assert model.cv_fitted.shape == (600,)
    assert np.all(np.isfinite(model.cv_fitted))
    # The full-data model is still fit alongside the fold models.
    assert len(model.trees) == 25


def test_fold_id_overrides_cv_folds(caplog):
    X, y, _ = _poisson_data(n=400, seed=6)
    fold_id = np.where(np.arange(400) % 2 == 0, "a", "b")
    params = GBMParams(n_trees=5, shrinkage=0.1, cv_folds=4)
    with caplog.at_level(logging.WARNING, logger="gbm_trainer"):
        model = GBMTrainer(params).fit(X, y, fold_id=fold_id)

    assert "CV folds changed from 4 to 2" in caplog.text
    assert model.cv_error.shape == (5,)
    with pytest.raises(ValueError):
        GBMTrainer(params).fit(X, y, fold_id=fold_id[:-1])


def test_best_iteration_cv_needs_folds():
    X, y, _ = _poisson_data(n=300)
    model = GBMTrainer(GBMParams(n_trees=3, shrinkage=0.1)).fit(X, y)
    assert model.cv_error is None
    with pytest.raises(ValueError):
        model.best_iteration("cv")


def test_m_features_above_feature_count_is_reset(caplog):
    X, y, _ = _poisson_data(n=300)
    params = GBMParams(n_trees=3, shrinkage=0.1, m_features=10)
    with caplog.at_level(logging.WARNING, logger="gbm_trainer"):
        model = GBMTrainer(params).fit(X, y)

    assert "reset to 3" in caplog.text
    assert len(model.trees) == 3
