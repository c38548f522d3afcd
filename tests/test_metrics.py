import numpy as np
import pytest

from tidysdm.models.metrics import (
    boyce_cont,
    kap_max,
    optim_thresh,
    roc_auc,
    sdm_metric_set,
    tss,
    tss_max,
)

Y_TRUE = np.array([0, 0, 0, 1, 1])
Y_SCORE = np.array([0.1, 0.2, 0.3, 0.8, 0.9])


def test_perfect_separation():
    assert roc_auc(Y_TRUE, Y_SCORE) == 1.0
    assert tss_max(Y_TRUE, Y_SCORE) == pytest.approx(1.0)
    assert kap_max(Y_TRUE, Y_SCORE) == pytest.approx(1.0)


def test_tss():
    y_pred = np.array([0, 0, 1, 1, 0])
    # sensitivity 1/2, specificity 2/3
    assert tss(Y_TRUE, y_pred) == pytest.approx(0.5 + 2 / 3 - 1)


def test_tss_max_random_scores_is_small():
    rng = np.random.default_rng(0)
    y_true = rng.integers(0, 2, 2000)
    y_score = rng.random(2000)
    assert tss_max(y_true, y_score) < 0.15


def test_boyce_cont_increasing():
    rng = np.random.default_rng(1)
    y_score = rng.random(5000)
    y_true = (rng.random(5000) < y_score).astype(int)
    assert boyce_cont(y_true, y_score) > 0.8


def test_boyce_cont_decreasing():
    rng = np.random.default_rng(2)
    y_score = rng.random(5000)
    y_true = (rng.random(5000) < 1 - y_score).astype(int)
    assert boyce_cont(y_true, y_score) < -0.8


def test_boyce_cont_no_presences():
    assert np.isnan(boyce_cont(np.zeros(5, dtype=int), Y_SCORE))


def test_optim_thresh():
    assert optim_thresh(Y_TRUE, Y_SCORE, metric="tss_max") == pytest.approx(0.8)
    assert optim_thresh(Y_TRUE, Y_SCORE, metric="kap_max") == pytest.approx(0.8)
    assert optim_thresh(Y_TRUE, Y_SCORE, metric="sensitivity", sens=0.5) == pytest.approx(0.9)
    assert optim_thresh(Y_TRUE, Y_SCORE, metric="sensitivity", sens=1.0) == pytest.approx(0.8)


def test_optim_thresh_errors():
    with pytest.raises(ValueError):
        optim_thresh(Y_TRUE, Y_SCORE, metric="sensitivity")
    with pytest.raises(ValueError):
        optim_thresh(Y_TRUE, Y_SCORE, metric="accuracy")


def test_metric_inputs_are_checked():
    with pytest.raises(ValueError):
        roc_auc(np.array([0, 1, 2]), np.array([0.1, 0.5, 0.9]))
    with pytest.raises(ValueError):
        tss_max(np.array([0, 1]), np.array([0.1, 0.5, 0.9]))


def test_sdm_metric_set():
    assert list(sdm_metric_set()) == ["boyce_cont", "roc_auc", "tss_max"]
    assert list(sdm_metric_set("kap_max")) == ["kap_max"]
    with pytest.raises(ValueError):
        sdm_metric_set("accuracy")
