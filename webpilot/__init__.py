"""
WebPilot - goal-driven browser testing agent.

Drives a Playwright MCP tool server over stdio and pursues a
natural-language test goal with an adaptive, loop-aware decision loop.
"""

__version__ = "0.1.0"
__author__ = "WebPilot Contributors"
