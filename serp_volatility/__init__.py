"""SERP Volatility Intelligence: read-only analytics over SERP observations.

Each module is a pure layer over the one below it: extraction -> delta ->
scoring -> diagnostics / decisions, with service.py handling tenant scope,
validation and envelopes, and cli.py printing JSON to stdout.
"""

__version__ = "0.1.0"
