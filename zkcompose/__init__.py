"""
zkcompose

Proof-composition orchestrator:
- Local inner proofs over private inputs
- Remote outer proofs that absorb the inner claim as an assumption
- Client-side binding checks before anything is spent
- Submission of the composed receipt to an on-chain verifier
"""

__version__ = "0.1.0"
