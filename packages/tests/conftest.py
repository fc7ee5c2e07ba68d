"""Pytest configuration and shared fixtures."""

# The evselink testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:evselink``) and load it explicitly here
# so that the evselink import chain is measured by pytest-cov.
pytest_plugins = ["evselink.testing._plugin"]
