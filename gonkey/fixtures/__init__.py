"""Loaders that fill PostgreSQL, MySQL, Aerospike and Redis with data from YAML fixtures."""