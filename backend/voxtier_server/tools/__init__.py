"""
Administrative tools for Voxtier.

- admin_cli: bootstrap, hierarchy assignment and membership repair
"""
