"""Tests for treesim.environment — light environments."""

import numpy as np
import pytest

from treesim.environment import CanopyEnvironment, FixedEnvironment


class TestFixedEnvironment:
    def test_constant(self):
        env = FixedEnvironment(0.3)
        np.testing.assert_array_equal(env.canopy_openness(np.array([0.0, 1.0, 50.0])),
                                      [0.3, 0.3, 0.3])

    def test_scalar(self):
        assert float(FixedEnvironment().canopy_openness(2.0)) == 1.0

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            FixedEnvironment(1.5)


class TestCanopyEnvironment:
    def test_empty_canopy_is_open(self):
        env = CanopyEnvironment.from_individuals([], [], [])
        np.testing.assert_array_equal(env.canopy_openness(np.array([0.0, 3.0])), [1.0, 1.0])
        assert env.canopy_height == 0.0

    def test_single_crown(self):
        env = CanopyEnvironment.from_individuals([4.0], [2.0], [12.0],
                                                 c_ext=0.5, patch_area=1.0)
        assert float(env.canopy_openness(0.0)) == pytest.approx(np.exp(-1.0))
        assert float(env.canopy_openness(4.0)) == pytest.approx(1.0)
        assert float(env.canopy_openness(6.0)) == pytest.approx(1.0)

    def test_openness_increases_with_height(self):
        env = CanopyEnvironment([3.0, 5.0], [1.0, 4.0], [12.0, 12.0])
        z = np.linspace(0.0, 6.0, 25)
        assert np.all(np.diff(env.canopy_openness(z)) >= 0)

    def test_patch_area_dilutes(self):
        small = CanopyEnvironment([4.0], [2.0], [12.0], patch_area=1.0)
        large = CanopyEnvironment([4.0], [2.0], [12.0], patch_area=10.0)
        assert float(large.canopy_openness(1.0)) > float(small.canopy_openness(1.0))

    def test_lai_additive(self):
        a = CanopyEnvironment([4.0], [2.0], [12.0])
        b = CanopyEnvironment([6.0], [1.0], [8.0])
        ab = CanopyEnvironment([4.0, 6.0], [2.0, 1.0], [12.0, 8.0])
        z = np.array([0.5, 2.0, 5.0])
        np.testing.assert_allclose(ab.leaf_area_index_above(z),
                                   a.leaf_area_index_above(z) + b.leaf_area_index_above(z))

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            CanopyEnvironment([1.0, 2.0], [1.0], [12.0, 12.0])
