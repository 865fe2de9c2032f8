"""
Extraction Queue

Persistent job queue and worker pipeline for scaffolding apps from
GitHub sources.
"""

__version__ = "0.1.0"
