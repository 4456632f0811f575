# safu/__init__.py
