"""
Causal analysis of the COVID-19 pandemic's impact on Vitamin D levels.

This package implements a pipeline that labels laboratory Vitamin D measurements by
pre-pandemic and pandemic period, balances the two periods with propensity-score matching,
derives bootstrap confidence intervals over repeated matched samples and estimates the
average treatment effect of the pandemic with a causal forest.
"""

__version__ = "1.0.0"
__author__ = "Data Science Research"
