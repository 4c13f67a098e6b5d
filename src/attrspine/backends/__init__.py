"""
Backend bindings: strategy sets for directory, relational and storage stores.

Each module supplies a QueryBuilder, ExecutableQuery, ConnectionProvider,
ResultMapper and default Validator for one kind of store. Compose them with
``attrspine.connectors.DataConnector`` or use ``attrspine.factory``.
"""
