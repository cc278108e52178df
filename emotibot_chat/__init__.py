"""
EmotiBot Chat - An emotion-aware chat service.

This package turns emotion samples (simulated, replayed, or pushed from a
device) into context for a supportive chat assistant backed by a hosted
text-generation service, and keeps the resulting conversation history.
"""

__version__ = "0.1.0"
