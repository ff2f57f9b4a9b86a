"""
cl_knowledge — knowledge graph store for markdown vaults (CL Knowledge Graph).

Public API for library usage::

    from cl_knowledge import KnowledgeGraphDatabase, default_db_path

    with KnowledgeGraphDatabase(default_db_path("/path/to/vault")) as db:
        print(db.get_statistics())
"""

from .graph import KnowledgeGraphDatabase, default_db_path

__version__ = "0.3.0"

__all__ = ["KnowledgeGraphDatabase", "default_db_path", "__version__"]
