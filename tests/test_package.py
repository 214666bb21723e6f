"""Tests for package installation and basic imports."""

from __future__ import annotations

import re


def test_import_openspacenet():
    """Importing openspacenet should succeed."""
    import openspacenet

    assert openspacenet is not None


def test_version_is_semver():
    """openspacenet.__version__ should be a valid semver string."""
    import openspacenet

    version = openspacenet.__version__
    assert isinstance(version, str)
    assert re.match(r"^\d+\.\d+\.\d+", version), f"Version '{version}' is not a valid semver string"


def test_import_orchestrator():
    from openspacenet import Orchestrator, RunConfig

    assert Orchestrator is not None
    assert RunConfig is not None


def test_all_names_exported():
    import openspacenet

    for name in openspacenet.__all__:
        assert hasattr(openspacenet, name), f"{name} listed in __all__ but missing"


def test_no_star_imports():
    """__init__.py should not use star imports."""
    import inspect

    import openspacenet

    source = inspect.getsource(openspacenet)
    assert "import *" not in source, "__init__.py contains star imports"


def test_import_does_not_configure_logging():
    """Importing the package attaches no handlers."""
    import logging

    import openspacenet  # noqa: F401

    assert logging.getLogger("openspacenet").handlers == []
