"""
db/ - Database Layer
====================
Opens and closes PostgreSQL sessions, validates and rewrites parameterized
SQL, and builds INSERT/UPDATE/DELETE/CREATE TABLE statements.
This layer has no knowledge of the repositories built on top of it.
"""
