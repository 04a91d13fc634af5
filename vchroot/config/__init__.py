# vchroot/config/__init__.py
