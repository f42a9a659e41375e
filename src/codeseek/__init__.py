"""codeseek - semantic and text search over local codebases, served over MCP."""

__version__ = "0.1.0"
