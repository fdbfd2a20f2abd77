"""Agent-facing services built on the process runtime.

Import concrete submodules directly; the package keeps no import side effects.
"""
