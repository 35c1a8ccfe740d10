"""
envkit -- encrypted environment variable sync.

Keeps a local .env.local and a remote authoritative store in step.
Every value travels and rests encrypted under a per-team key.
"""

import os

__version__ = "0.1.0"
__author__ = "envkit"

ENVKIT_HOME = os.environ.get("ENVKIT_HOME", "~/.envkit")
