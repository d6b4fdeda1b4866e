"""relaychat: streaming multi-turn tool-calling chat orchestration."""

__version__ = "0.1.0"
