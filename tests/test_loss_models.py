import numpy as np
import pytest

from loss_models import (
    GaussianLoss,
    LaplaceLoss,
    LossModel,
    PoissonLoss,
    TerminalNode,
    get_loss_model,
)


def test_registry_returns_fresh_instances():
    first = get_loss_model("poisson")
    second = get_loss_model("poisson")
    assert isinstance(first, PoissonLoss)
    assert first is not second
    assert isinstance(get_loss_model("gaussian"), GaussianLoss)
    assert isinstance(get_loss_model("laplace"), LaplaceLoss)


def test_registry_rejects_unknown_distribution():
    with pytest.raises(ValueError, match="Unsupported distribution"):
        get_loss_model("tweedie")


def test_loss_model_is_abstract():
    with pytest.raises(TypeError):
        LossModel()


def test_gaussian_working_response_and_init_f():
    loss = GaussianLoss()
    y = np.array([1.0, 3.0, 8.0])
    offset = np.array([0.5, 0.5, 1.0])
    f = np.array([0.0, 1.0, 2.0])
    w = np.array([1.0, 1.0, 2.0])

    z = loss.compute_working_response(y, offset, f, w, np.ones(3, dtype=bool), 3)
    assert np.allclose(z, [0.5, 1.5, 5.0])
    assert np.isclose(loss.init_f(y, offset, w, 3), (0.5 + 2.5 + 14.0) / 4.0)


def test_gaussian_deviance_is_weighted_mse():
    loss = GaussianLoss()
    y = np.array([1.0, 2.0, 4.0])
    f = np.array([1.0, 1.0, 1.0])
    w = np.array([1.0, 1.0, 2.0])
    assert np.isclose(loss.deviance(y, None, w, f, 3, 0), (0.0 + 1.0 + 18.0) / 4.0)


def test_gaussian_fit_best_constant_weighted_in_bag_mean():
    loss = GaussianLoss()
    y = np.array([1.0, 3.0, 100.0, 5.0, 0.0])
    w = np.array([1.0, 3.0, 1.0, 1.0, 0.0])
    in_bag = np.array([True, True, False, True, True])
    node_assign = np.array([0, 0, 0, 1, 2])
    nodes = [TerminalNode(), TerminalNode(), TerminalNode(prediction=4.0)]

    loss.fit_best_constant(y, None, w, np.zeros(5), node_assign, 5, nodes, 3, 1, in_bag, None)

    assert np.isclose(nodes[0].prediction, 10.0 / 4.0)
    assert np.isclose(nodes[1].prediction, 5.0)
    assert nodes[2].prediction == 0.0


def test_gaussian_bag_improvement_matches_loss_reduction():
    loss = GaussianLoss()
    y = np.array([2.0, 5.0, -1.0])
    f = np.array([0.0, 1.0, 0.0])
    f_adj = np.array([1.0, 2.0, -1.0])
    in_bag = np.array([True, False, False])
    step = 0.5

    value = loss.bag_improvement(y, None, np.ones(3), f, f_adj, in_bag, step, 3)
    before = (y - f) ** 2
    after = (y - f - step * f_adj) ** 2
    assert np.isclose(value, np.mean((before - after)[1:]))
    assert loss.bag_improvement(y, None, np.ones(3), f, f_adj, in_bag, 0.0, 3) == 0.0


def test_laplace_init_f_is_weighted_median():
    loss = LaplaceLoss()
    y = np.array([1.0, 2.0, 10.0])
    assert loss.init_f(y, None, np.ones(3), 3) == 2.0
    assert loss.init_f(y, None, np.array([1.0, 1.0, 5.0]), 3) == 10.0


def test_laplace_working_response_is_sign_of_residual():
    loss = LaplaceLoss()
    z = loss.compute_working_response(
        np.array([1.0, 2.0, 3.0]), None, np.array([2.0, 2.0, 2.0]), np.ones(3),
        np.ones(3, dtype=bool), 3,
    )
    assert np.array_equal(z, [-1.0, 0.0, 1.0])


def test_laplace_fit_best_constant_honours_min_obs_in_node():
    loss = LaplaceLoss()
    y = np.array([1.0, 2.0, 9.0, 4.0])
    node_assign = np.array([0, 0, 0, 1])
    nodes = [TerminalNode(prediction=-1.0), TerminalNode(prediction=-1.0)]

    loss.fit_best_constant(
        y, None, np.ones(4), np.zeros(4), node_assign, 4, nodes, 2, 2,
        np.ones(4, dtype=bool), None,
    )

    assert nodes[0].prediction == 2.0
    assert nodes[1].prediction == -1.0


def test_laplace_deviance_and_bag_improvement():
    loss = LaplaceLoss()
    y = np.array([3.0, -2.0])
    f = np.zeros(2)
    assert np.isclose(loss.deviance(y, None, np.ones(2), f, 2, 0), 2.5)

    value = loss.bag_improvement(
        y, None, np.ones(2), f, np.array([1.0, 1.0]), np.array([False, False]), 1.0, 2
    )
    assert np.isclose(value, ((3.0 - 2.0) + (2.0 - 3.0)) / 2.0)


def test_identity_link_for_additive_losses():
    eta = np.array([-1.0, 0.0, 2.5])
    assert np.array_equal(GaussianLoss().link_inverse(eta), eta)
    assert np.array_equal(LaplaceLoss().link_inverse(eta), eta)
