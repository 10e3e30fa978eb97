"""
Strategy interfaces and reference implementations.

Defines the market insight model and the analyzer, sizer, risk gate, and
price estimator protocols, plus an indicator-based analyzer and a
trend-following sizer.
"""
