"""
Routing contract of the frontend's reverse proxy.
"""
import posixpath
from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class RouteDecision:
    """
    What the proxy does with one request.

    ``action`` is ``static`` (serve a file), ``spa`` (serve the entry
    document) or ``proxy`` (forward to ``upstream`` + ``path``).
    """
    action: str
    path: str
    upstream: Optional[str] = None

    @property
    def target(self) -> str:
        if self.action == "proxy":
            return f"{self.upstream}{self.path}"
        return self.path


class ProxyRouter:
    """
    Serves the single-page application and forwards the API prefix to the
    backend with the request path left unchanged.
    """
    def __init__(self, backend_host: str = "backend", backend_port: int = 8080,
                 api_prefix: str = "/api/", index_document: str = "/index.html",
                 static_files: Optional[Iterable[str]] = None):
        """
        :param backend_host: Backend service name on the shared network.
        :param backend_port: Backend's internal port.
        :param api_prefix: Path prefix forwarded to the backend.
        :param index_document: SPA entry document.
        :param static_files: Paths of built assets served as-is.
        """
        if not api_prefix.startswith("/"):
            api_prefix = "/" + api_prefix
        if not api_prefix.endswith("/"):
            api_prefix += "/"
        self.api_prefix = api_prefix
        self.backend_host = backend_host
        self.backend_port = backend_port
        self.index_document = index_document
        self.static_files = set(static_files or [])

    @property
    def upstream(self) -> str:
        return f"http://{self.backend_host}:{self.backend_port}"

    def route(self, request_target: str) -> RouteDecision:
        """
        Decides how a request is served.

        :param request_target: Path with optional query string.
        :return: The routing decision. Proxied paths keep their query string.
        """
        # Request targets are origin-form; the fragment never reaches the server
        path, _, query = request_target.split("#", 1)[0].partition("?")
        path = path or "/"

        if path.startswith(self.api_prefix) or path == self.api_prefix.rstrip("/"):
            forwarded = path + (f"?{query}" if query else "")
            return RouteDecision(action="proxy", path=forwarded, upstream=self.upstream)

        normalized = posixpath.normpath(path)
        if normalized in self.static_files:
            return RouteDecision(action="static", path=normalized)
        return RouteDecision(action="spa", path=self.index_document)
