"""
Identity and signing layer.

Modules:
- keys / events / ciphers: secp256k1 keys, NIP-01 events, NIP-44 and NIP-04
- signers: Signer capability with extension-backed and local-key variants
- relay / remote / bunker: remote-signer (NIP-46) transport, session and handshake
- service: the single process-wide active signer
- nip98: signed HTTP auth headers
"""

__all__ = [
    "bunker",
    "ciphers",
    "events",
    "keys",
    "nip98",
    "relay",
    "remote",
    "service",
    "signers",
]
