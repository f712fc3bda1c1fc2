# =============================================================================
# kbindex/cli/__main__.py: package entry point
# =============================================================================
#
# Enables `python -m kbindex.cli <command>`; delegates to manage.main().
# =============================================================================

"""Allow ``python -m kbindex.cli`` execution."""

from kbindex.cli.manage import main

main()
