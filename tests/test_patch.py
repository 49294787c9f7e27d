"""Tests for treesim.patch — species sub-populations and patches."""

import numpy as np
import pytest

from treesim.errors import IndexOutOfRangeError, ShapeMismatchError
from treesim.individual import Individual
from treesim.metacommunity import Parameters
from treesim.patch import Patch, Species
from treesim.physiology import rates_at
from treesim.rng import create_rng
from treesim.strategy import Strategy


@pytest.fixture
def parameters():
    return Parameters(strategies=[Strategy(hmat=10.0), Strategy(lma=0.1)])


@pytest.fixture
def patch(parameters):
    return Patch(parameters, create_rng(42))


class TestSpecies:
    def test_add_seeds(self):
        sp = Species(Strategy())
        sp.add_seeds(3)
        assert sp.size() == 3
        assert all(isinstance(ind, Individual) for ind in sp.individuals)
        np.testing.assert_allclose(sp.heights(), sp.strategy.height_0)

    def test_births_sum_offspring(self):
        sp = Species(Strategy())
        sp.add_seeds(2)
        sp.individuals[0].fecundity = 2.5
        sp.individuals[1].fecundity = 1.0
        assert sp.births() == 3
        assert sp.individuals[0].fecundity == pytest.approx(0.5)

    def test_deaths_preserve_order(self):
        sp = Species(Strategy())
        sp.add_seeds(4)
        for i, ind in enumerate(sp.individuals):
            ind.height = 1.0 + i
        sp.individuals[1].mortality = 100.0
        assert sp.deaths(create_rng(0)) == 1
        np.testing.assert_allclose(sp.heights(), [1.0, 3.0, 4.0])

    def test_ode_size(self):
        sp = Species(Strategy())
        sp.add_seeds(5)
        assert sp.ode_size() == 15


class TestPatchStructure:
    def test_species_per_strategy(self, patch, parameters):
        assert patch.n_species == 2
        assert patch.at(1).strategy is parameters.strategies[1]

    def test_at_out_of_range(self, patch):
        with pytest.raises(IndexOutOfRangeError):
            patch.at(2)
        with pytest.raises(IndexError):
            patch.at(-1)

    def test_add_seeds(self, patch):
        patch.add_seeds([2, 1])
        assert patch.n_individuals() == 3
        np.testing.assert_array_equal(patch.n_individuals_by_species(), [2, 1])

    def test_add_seeds_wrong_length(self, patch):
        with pytest.raises(ShapeMismatchError):
            patch.add_seeds([1, 2, 3])
        assert patch.n_individuals() == 0

    def test_add_seeds_negative(self, patch):
        with pytest.raises(ValueError):
            patch.add_seeds([1, -1])
        assert patch.n_individuals() == 0

    def test_clear(self, patch):
        patch.add_seeds([3, 3])
        patch.clear()
        assert patch.n_individuals() == 0
        assert patch.ode_size() == 0


class TestPatchOde:
    def test_size_is_sum_of_individuals(self, patch):
        patch.add_seeds([2, 3])
        assert patch.ode_size() == 3 * 5

    def test_species_major_order(self, patch):
        patch.add_seeds([2, 1])
        y = np.array([1.0, 0.0, 0.0,
                      2.0, 0.0, 0.0,
                      3.0, 0.0, 0.0])
        patch.write_values(y)
        np.testing.assert_allclose(patch.at(0).heights(), [1.0, 2.0])
        np.testing.assert_allclose(patch.at(1).heights(), [3.0])
        np.testing.assert_array_equal(patch.read_values(), y)

    def test_values_set_rebuilds_environment(self, patch):
        patch.add_seeds([1, 1])
        patch.write_values([4.0, 0.0, 0.0, 1.0, 0.0, 0.0])
        np.testing.assert_allclose(sorted(patch.environment.heights), [1.0, 4.0])
        dydt = np.empty(6)
        assert patch.ode_rates(dydt) == 6
        assert np.all(np.isfinite(dydt))

    def test_rates_match_individuals(self, patch):
        patch.add_seeds([1, 2])
        rates = patch.compute_rates(0.0, patch.read_values())
        individuals = patch.at(0).individuals + patch.at(1).individuals
        expected = np.concatenate([ind.vars.rates() for ind in individuals])
        np.testing.assert_allclose(rates, expected)

    def test_tall_neighbour_shades(self, parameters):
        alone = Patch(parameters, create_rng(0))
        alone.add_seeds([1, 0])
        shaded = Patch(parameters, create_rng(0))
        shaded.add_seeds([1, 1])
        r_alone = alone.compute_rates(0.0, [1.0, 0.0, 0.0])
        r_shaded = shaded.compute_rates(0.0, [1.0, 0.0, 0.0, 5.0, 0.0, 0.0])
        assert r_shaded[0] < r_alone[0]


class TestPatchDemography:
    def test_births_per_species(self, patch):
        patch.add_seeds([1, 1])
        patch.at(0).individuals[0].fecundity = 4.2
        np.testing.assert_array_equal(patch.births(), [4, 0])

    def test_deaths_per_species(self, patch):
        patch.add_seeds([2, 2])
        patch.at(1).individuals[0].mortality = 100.0
        np.testing.assert_array_equal(patch.deaths(), [0, 1])
        np.testing.assert_array_equal(patch.n_individuals_by_species(), [2, 1])

    def test_deaths_need_rng(self, parameters):
        p = Patch(parameters)
        p.add_seeds([1, 0])
        with pytest.raises(RuntimeError):
            p.deaths()


class TestApproximatePatch:
    @pytest.fixture
    def parameters(self):
        return Parameters(strategies=[Strategy(hmat=10.0)], approximate=True)

    def test_species_own_spline_copies(self, parameters):
        p1 = Patch(parameters, create_rng(0))
        p2 = Patch(parameters, create_rng(0))
        template = parameters.rate_spline(0)
        assert p1.at(0).rate_spline is not template
        assert p1.at(0).rate_spline is not p2.at(0).rate_spline

    def test_rates_follow_canopy(self, parameters):
        """Spline-backed rates under a neighbour's crown match the exact model."""
        patch = Patch(parameters, create_rng(0))
        patch.add_seeds([2])
        small = patch.at(0).individuals[0]
        rates = patch.compute_rates(0.0, [small.height, 0.0, 0.0, 4.0, 0.0, 0.0])
        strategy = parameters.strategies[0]
        expected = np.concatenate([rates_at(small.height, strategy, patch.environment),
                                   rates_at(4.0, strategy, patch.environment)])
        np.testing.assert_allclose(rates, expected, rtol=1e-3, atol=1e-3)
        assert patch.at(0).rate_spline.environment is patch.environment

    def test_template_stays_open_sky(self, parameters):
        patch = Patch(parameters, create_rng(0))
        patch.add_seeds([2])
        patch.compute_rates(0.0, [1.0, 0.0, 0.0, 4.0, 0.0, 0.0])
        template = parameters.rate_spline(0)
        assert template.environment.openness == 1.0
        shaded = rates_at(1.0, parameters.strategies[0], patch.environment)
        assert template.rates(1.0)[0] > shaded[0]
