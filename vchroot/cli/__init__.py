# vchroot/cli/__init__.py
