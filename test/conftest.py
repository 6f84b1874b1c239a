from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from threading import Thread
import pytest


def pytest_addoption(parser):
    parser.addoption("--runslow", action="store_true", default=False, help="run slow tests")

def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")

def pytest_collection_modifyitems(config, items):

    if config.getoption("--runslow"):
        return

    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture(scope = "session")
def tmp_context(tmp_path_factory):
    """This fixture is used to create a game's install context global to test session.
    """

    from protolauncher.context import Context
    return Context(tmp_path_factory.mktemp("context"))

@pytest.fixture
def context(tmp_path):
    """A fresh install context for tests that need an empty directory.
    """

    from protolauncher.context import Context
    return Context(tmp_path / "main", tmp_path / "work")

@pytest.fixture
def linux_platform():
    from protolauncher.system import PlatformInfo
    return PlatformInfo("linux", "6.1.0", "x86_64", 64, ":")


class FileServer:
    """A local HTTP server serving files from a dictionary of routes, each route being
    either the raw body or a tuple (status, body, headers). Every request path is
    recorded in `requests`, as (method, path, headers).
    """

    def __init__(self) -> None:
        self.routes = {}
        self.requests = []
        server = self

        class Handler(BaseHTTPRequestHandler):

            def _respond(self, send_body: bool) -> None:
                server.requests.append((self.command, self.path, self.headers))
                route = server.routes.get(self.path)
                if route is None:
                    status, body, headers = 404, b"not found", {}
                elif isinstance(route, tuple):
                    status, body, headers = route
                else:
                    status, body, headers = 200, route, {}
                self.send_response(status)
                for name, value in headers.items():
                    self.send_header(name, value)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                if send_body:
                    self.wfile.write(body)

            def do_GET(self):
                self._respond(True)

            def do_HEAD(self):
                self._respond(False)

            def log_message(self, format, *args):
                pass

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.httpd.daemon_threads = True
        self.url = f"http://127.0.0.1:{self.httpd.server_address[1]}"
        self.thread = Thread(target=self.httpd.serve_forever, daemon=True)

    def count(self, path: str, method: str = "GET") -> int:
        return sum(1 for req_method, req_path, _ in self.requests if req_path == path and req_method == method)

@pytest.fixture
def file_server():
    """A local HTTP server, routes are added to its `routes` dictionary.
    """

    server = FileServer()
    server.thread.start()
    yield server
    server.httpd.shutdown()
    server.httpd.server_close()
