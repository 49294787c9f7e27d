"""treesim: individual-based simulator of plant metacommunities.

Hybrid continuous/stochastic model:
  - Plant growth, mortality hazard and seed output integrated as ODEs
    from height-indexed allometry and light-limited production
  - Light competition within patches through the crowns' leaf area
  - Deaths and seed dispersal among patches as discrete random events
  - Exact or spline-approximated physiology per individual
"""

__version__ = "0.1.0"
