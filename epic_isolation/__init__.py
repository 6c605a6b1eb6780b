"""Epic Isolation - git worktree isolation for concurrent AI coding sessions.

Gives each epic its own git working directory so several automated
sessions can work in parallel without fighting over one checkout.
"""

__version__ = "0.1.0"
