"""
dotvault -- keep local secrets and the vault telling the same story.

SSH keys, cloud credentials, git config and environment secrets live
on disk; their canonical copies live as secure notes in a password
manager. dotvault decides, per item, which side moved since the last
sync and carries the change across without ever destroying the only
surviving copy.
"""

import os

__version__ = "0.1.0"

DOTVAULT_HOME = os.environ.get("DOTVAULT_HOME", "~/.dotvault")
