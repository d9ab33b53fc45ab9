"""Snippet execution for the workspace.

This package contains:
- A bounded child-process runner (timeout, process-group kill, pipe draining)
- The gateway that maps a language tag onto an interpreter invocation
"""
