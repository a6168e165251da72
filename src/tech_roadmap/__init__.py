"""Tech Roadmap: datasource sync and normalization for roadmap timelines."""

__version__ = "0.1.0"
