"""
modelvc - file-based version control for binary 3D model files.

Every save of a tracked model becomes an immutable snapshot (commit) kept in a
sibling ``0studio`` folder. Snapshots are organized into branches and can be
pushed to or pulled from a remote object store through short-lived
pre-authorized URLs.
"""

__version__ = "0.4.2"
