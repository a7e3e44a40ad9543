"""PostgreSQL source reader, sink and checkpoint store (psycopg2)."""
