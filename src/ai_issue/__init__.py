"""ai-issue: research, solve and evaluate issues with an external coding agent.

Runs one research -> classify -> solve/guide -> evaluate pipeline per issue,
and many of them at once under a concurrency cap.
"""

__version__ = "1.0.0"
