# Profile harvester: resilient discovery and extraction
__version__ = "0.3.0"
