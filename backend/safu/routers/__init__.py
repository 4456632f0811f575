# safu/routers/__init__.py
