"""Supervised execution of external agent CLIs.

Import concrete submodules directly; the package keeps import side-effects
minimal so that configuration is only loaded when needed.
"""

__version__ = "0.1.0"
