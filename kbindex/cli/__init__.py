# =============================================================================
# kbindex/cli/__init__.py: command-line tools
# =============================================================================
#
# Operators drive the index from here: start and stop indexing runs, run
# the queue worker, inspect progress and statistics, and issue test
# queries against the retrieval service.
#
# Architecture notes:
#   - argparse only; no extra CLI framework.
#   - Providers and stores are built by kbindex.main, imported lazily so
#     `--help` stays fast.
#   - stdout carries command output; structured logs go to stderr.
# =============================================================================

"""CLI tools for the kbindex pipeline.

- ``python -m kbindex.cli``: manage indexing runs and query the index
  (see :mod:`kbindex.cli.manage`).
"""
