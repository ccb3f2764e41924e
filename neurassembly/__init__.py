"""neurassembly: verified learned superoptimization of machine code."""

__version__ = "0.1.0"
