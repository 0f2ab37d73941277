"""Database access and data models for the site EAV store.

``sitehub.db.database`` owns connections, the idempotent schema DDL, COPY
streaming and savepoints. ``sitehub.db.models`` holds the dataclasses that
flow between the services and the API layer.

Example:
    Open a connection and make sure the tables exist:
        >>> from sitehub.db import database
        >>> conn = database.get_connection(settings)
        >>> database.ensure_schema(conn)
"""
