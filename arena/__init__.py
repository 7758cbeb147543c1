"""APEX ARENA - LLM trading agents competing on a shared market"""

__version__ = "0.1.0"
