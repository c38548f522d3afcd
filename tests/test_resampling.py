import numpy as np
import pytest

from tidysdm.models.resampling import check_splits_balance, geographic_kfold_cv, spatial_block_cv


def _check_partition(splits, n):
    tests = np.concatenate([test for _, test in splits])
    assert sorted(tests.tolist()) == list(range(n))
    for train, test in splits:
        assert len(np.intersect1d(train, test)) == 0
        assert len(train) + len(test) == n


def test_spatial_block_cv(training_data):
    splits = spatial_block_cv(training_data, v=4, random_state=0)
    assert len(splits) == 4
    _check_partition(splits, len(training_data))


def test_spatial_block_cv_keeps_blocks_together(training_data):
    splits = spatial_block_cv(training_data, v=3, cellsize=5000, random_state=0)
    coords = np.column_stack([training_data.geometry.x, training_data.geometry.y])
    xmin, ymin = coords.min(axis=0)
    block = [tuple(b) for b in np.floor((coords - [xmin, ymin]) / 5000).astype(int)]
    for _, test in splits:
        test_blocks = {block[i] for i in test}
        others = {block[i] for i in range(len(block)) if i not in set(test)}
        assert not test_blocks & others


def test_spatial_block_cv_reproducible(training_data):
    a = spatial_block_cv(training_data, v=3, random_state=5)
    b = spatial_block_cv(training_data, v=3, random_state=5)
    for (_, ta), (_, tb) in zip(a, b):
        np.testing.assert_array_equal(ta, tb)


def test_spatial_block_cv_too_few_blocks(training_data):
    with pytest.raises(ValueError):
        spatial_block_cv(training_data, v=5, cellsize=1e6)
    with pytest.raises(ValueError):
        spatial_block_cv(training_data, v=1)


def test_geographic_kfold_cv(training_data):
    splits = geographic_kfold_cv(training_data, v=3, random_state=0)
    assert len(splits) == 3
    _check_partition(splits, len(training_data))


def test_check_splits_balance(training_data):
    splits = spatial_block_cv(training_data, v=3, random_state=0)
    balance = check_splits_balance(splits, training_data)
    assert list(balance.columns) == [
        "fold",
        "presence_analysis",
        "absence_analysis",
        "presence_assessment",
        "absence_assessment",
    ]
    n_pres = int((training_data["class"] == 1).sum())
    assert balance["presence_assessment"].sum() == n_pres
    assert (balance["presence_analysis"] + balance["presence_assessment"] == n_pres).all()
