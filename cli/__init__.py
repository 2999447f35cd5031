"""Command line client for the Spark station aggregator API.

The Typer application lives in ``cli.app``; run it with ``python -m cli.app``.
"""
