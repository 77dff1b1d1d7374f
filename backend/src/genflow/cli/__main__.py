"""CLI entry point for genflow.cli module.

Enables execution via: python -m genflow.cli
"""

from genflow.cli.reconcile import main

if __name__ == "__main__":
    raise SystemExit(main())
