# safu/schemas/__init__.py
