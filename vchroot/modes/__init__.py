# vchroot/modes/__init__.py
