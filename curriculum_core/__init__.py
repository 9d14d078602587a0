"""
Curriculum Core
Deterministic orchestration, knowledge-graph and leveling logic that turns
a learning source into a prerequisite graph and a leveled roadmap.
"""

__version__ = "0.1.0"
