"""Clinical note extraction core.

Turns redundant free-text progress notes into a deduplicated, dated,
negation-filtered entity set with a causal timeline, treatment responses,
functional trajectory and a quality report.
"""

__version__ = "0.1.0"
