"""
BaseCommerce core utilities.

Settings, logging, database and Redis helpers shared by services.
"""
