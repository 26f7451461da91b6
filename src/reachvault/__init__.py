"""
Reach Vault — encrypted secrets vault.

Stores credentials, keys, notes and scripts as envelopes at rest,
replicates them across devices through an untrusted remote store,
and shares them between identities without exposing plaintext.
"""

import os

__version__ = "0.1.0"
__author__ = "Reach"

VAULT_HOME = os.environ.get("REACHVAULT_HOME", "~/.reachvault")
