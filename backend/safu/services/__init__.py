# safu/services/__init__.py
