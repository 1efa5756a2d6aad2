"""
Agentic Workspace - browser automation with per-workspace memory.

Each workspace owns a three-tier memory (episodic, semantic,
procedural), a token-budgeted context assembler and an autonomy policy
that decides which planned steps need human approval.
"""

__version__ = "0.1.0"
__author__ = "Agentic Workspace Contributors"
