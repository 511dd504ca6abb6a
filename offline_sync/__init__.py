# offline_sync/__init__.py
# Description: Local-first record store that syncs with a remote store when connectivity allows.
#
__version__ = "0.1.0"
