"""SoulyCore: tiered memory and autonomous agents for a conversational assistant."""

__version__ = "0.1.0"
