from __future__ import annotations

import functools

import tabulate as _tabulate

__all__ = ["tabulate"]

# Define the default tablefmt for reports
tabulate = functools.partial(_tabulate.tabulate, tablefmt="psql")
functools.update_wrapper(tabulate, _tabulate.tabulate)
