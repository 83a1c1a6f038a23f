"""calltrace: call-tree tracing and execution analytics for tool pipelines."""

__version__ = "0.1.0"
