"""
Smoke tests to verify all modules can be imported.
"""

def test_import_explorer_core():
    import explorer_core
    assert hasattr(explorer_core, '__version__')


def test_import_registry():
    import registry
    assert hasattr(registry, '__version__')


def test_import_sandbox():
    import sandbox
    assert hasattr(sandbox, '__version__')


def test_import_query():
    import query
    assert hasattr(query, '__version__')


def test_import_server():
    import server
    assert hasattr(server, '__version__')


def test_import_cli_app():
    from server.cli import app
    assert app is not None
