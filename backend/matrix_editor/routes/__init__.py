from importlib import import_module

modules = [
    'auth',
    'matrix_editor',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
