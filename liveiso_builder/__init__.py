"""Live Ubuntu ISO builder (Python-first, stage-driven).

Core design goals:
- Ordered, phase-tagged build stages over one root tree
- Every mount released, in reverse order, on every exit path
- Data-driven package sets
- Architecture-aware boot artifacts
- Centralized logging
"""

__all__ = []
