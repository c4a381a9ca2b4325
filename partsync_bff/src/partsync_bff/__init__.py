# src/partsync_bff/__init__.py
