"""Value comparison, script running and YAML fixture loading for functional API tests."""

__version__ = "0.1.0"