from __future__ import annotations

import numpy as np
import pytest

from depthcut.errors import ConfigError
from depthcut.ranges import DepthRange, partition


@pytest.mark.parametrize("n", [1, 2, 3, 4, 7, 8, 16, 64])
def test_partition_is_contiguous_without_overlap(n):
    ranges = partition(n, 0)
    assert len(ranges) == n
    assert ranges[0].min == 0
    assert ranges[-1].max == 100
    for a, b in zip(ranges, ranges[1:]):
        assert a.max == b.min
    assert [r.index for r in ranges] == list(range(n))
    assert [r.final for r in ranges] == [False] * (n - 1) + [True]


def test_partition_four_layers():
    assert [(r.min, r.max) for r in partition(4, 0)] == [(0, 25), (25, 50), (50, 75), (75, 100)]


def test_overlap_moves_only_upper_bounds():
    base = partition(4, 0)
    shifted = partition(4, 10)
    for b, s in zip(base[:-1], shifted[:-1]):
        assert s.min == b.min
        assert s.max == pytest.approx(min(100, b.max + 10))
    assert shifted[-1].min == base[-1].min
    assert shifted[-1].max == 100


def test_overlap_is_capped_at_100():
    ranges = partition(2, 80)
    assert ranges[0].max == 100
    assert ranges[1].max == 100


def test_bounds_rounded_to_one_decimal():
    ranges = partition(3, 0)
    assert [(r.min, r.max) for r in ranges] == [(0, 33.3), (33.3, 66.7), (66.7, 100)]
    assert partition(3, 1)[0].max == 34.3


def test_labels():
    assert [r.label for r in partition(4, 0)] == ["0~25", "25~50", "50~75", "75~100"]
    assert partition(3, 0)[1].label == "33.3~66.7"


def test_every_depth_lands_in_at_least_one_range():
    depths = np.linspace(0, 100, 2001, dtype=np.float32)
    for n, overlap in [(1, 0), (4, 0), (7, 3), (16, 100)]:
        ranges = partition(n, overlap)
        hits = np.zeros(depths.shape, dtype=int)
        for r in ranges:
            hits += r.mask(depths)
        assert hits.min() >= 1
        assert hits.max() <= n


def test_no_overlap_means_exactly_one_range():
    depths = np.linspace(0, 100, 1001, dtype=np.float32)
    hits = sum(r.mask(depths).astype(int) for r in partition(5, 0))
    assert (hits == 1).all()


def test_final_range_is_closed():
    final = partition(4, 0)[-1]
    assert final.contains(100)
    inner = DepthRange(index=0, min=0, max=25)
    assert inner.contains(0)
    assert not inner.contains(25)


@pytest.mark.parametrize(
    "n,overlap",
    [(0, 0), (-1, 0), (2.5, 0), (True, 0), ("4", 0), (4, -1), (4, float("nan")), (4, float("inf"))],
)
def test_invalid_arguments(n, overlap):
    with pytest.raises(ConfigError):
        partition(n, overlap)
