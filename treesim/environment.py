"""Light environment seen by individuals within a patch.

Canopy openness E(z) is the fraction of full light reaching height z.
Openness under a canopy follows Beer's law on the leaf area index above
z, each crown contributing its leaf area in proportion to the fraction
of its crown that lies above z.
"""

from __future__ import annotations

import numpy as np

from treesim.physiology import leaf_area_above


class Environment:
    """Base class: canopy openness as a function of height."""

    def canopy_openness(self, height):
        raise NotImplementedError


class FixedEnvironment(Environment):
    """Constant openness at every height (1.0 = open sky)."""

    def __init__(self, openness: float = 1.0):
        if not 0.0 <= openness <= 1.0:
            raise ValueError(f"openness must be in [0, 1], got {openness}")
        self.openness = openness

    def canopy_openness(self, height):
        return np.full_like(np.asarray(height, dtype=np.float64), self.openness)

    def __repr__(self) -> str:
        return f"FixedEnvironment(openness={self.openness})"


class CanopyEnvironment(Environment):
    """Openness exp(−c_ext · LAI_above(z)) shaded by a set of crowns.

    Args:
        heights: Crown heights (m).
        leaf_areas: Crown leaf areas (m²).
        etas: Crown shape parameters.
        c_ext: Light extinction coefficient.
        patch_area: Ground area the leaf area is spread over (m²).
    """

    def __init__(self, heights, leaf_areas, etas, c_ext: float = 0.5,
                 patch_area: float = 1.0):
        self.heights = np.asarray(heights, dtype=np.float64)
        self.leaf_areas = np.asarray(leaf_areas, dtype=np.float64)
        self.etas = np.asarray(etas, dtype=np.float64)
        if not (len(self.heights) == len(self.leaf_areas) == len(self.etas)):
            raise ValueError("heights, leaf_areas and etas must have equal length")
        if patch_area <= 0:
            raise ValueError("patch_area must be positive")
        self.c_ext = c_ext
        self.patch_area = patch_area

    @classmethod
    def from_individuals(cls, heights, leaf_areas, etas, c_ext: float = 0.5,
                         patch_area: float = 1.0) -> 'CanopyEnvironment':
        return cls(heights, leaf_areas, etas, c_ext, patch_area)

    @property
    def canopy_height(self) -> float:
        return float(self.heights.max()) if len(self.heights) else 0.0

    def leaf_area_index_above(self, height):
        z = np.asarray(height, dtype=np.float64)
        total = np.zeros_like(z)
        for h, la, eta in zip(self.heights, self.leaf_areas, self.etas):
            # leaf_area_above is 0 for z >= h
            total = total + la * leaf_area_above(z, h, eta)
        return total / self.patch_area

    def canopy_openness(self, height):
        return np.exp(-self.c_ext * self.leaf_area_index_above(height))

    def __repr__(self) -> str:
        return (f"CanopyEnvironment(n={len(self.heights)}, c_ext={self.c_ext}, "
                f"patch_area={self.patch_area})")
