"""
rendermath - HTTP front end for rendering LaTeX, MathML and JATS formulas.

A supervisor process keeps a pool of worker processes alive; every worker
listens on the shared port and hands each request to the render pipeline.
"""

__version__ = "3.0.0"
