"""
CI Admin module.

The ci-admin command line tool for operating repositories, builds and jobs
against a local database.
"""
