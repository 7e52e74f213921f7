# abel/__init__.py
"""Abel - opinionated C++ build runner layered over CMake, Ninja and git."""

__version__ = "0.4.0"
