"""
dockhand: deployment orchestration and port allocation for a single-node mini-PaaS.
"""
__version__ = "1.0.0"
