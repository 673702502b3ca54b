"""
=============================================================================
URL ROUTER
=============================================================================

Maps (method, path) pairs to handler callables.

=============================================================================
ROUTING FLOW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        ROUTING FLOW                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Incoming Request:  GET /users/                                     │
    │        │                                                             │
    │        ▼  normalize path  ("/users/" → "/users")                     │
    │   ┌─────────────────────────────────────────────────────────────┐   │
    │   │  ROUTE TABLE   (dict keyed by (method, path))                │   │
    │   │                                                              │   │
    │   │   ("GET",  "/")       → index                                │   │
    │   │   ("GET",  "/users")  → list_users      ← MATCH              │   │
    │   │   ("POST", "/users")  → create_user                          │   │
    │   └─────────────────────────────────────────────────────────────┘   │
    │        │                                                             │
    │        ▼                                                             │
    │   list_users(request, response)                                      │
    │                                                                      │
    │   No entry → NOT_FOUND sentinel (the server answers 404)             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
MATCHING RULES
=============================================================================

1. Paths are normalized by stripping trailing slashes, except for "/":
       "/users/" → "/users",   "/" → "/"

2. Methods are compared case-sensitively ("get" does not match "GET").

3. Paths are compared literally. There are no parameters or wildcards.
   The parser has already decoded percent-escapes, except %2F, so
   "/a%2F" reaches the router as "/a%2F" and does not match "/a".

4. Registering the same (method, path) twice replaces the first handler.
   The last registration wins and a warning is logged.

=============================================================================
THREAD SAFETY
=============================================================================

Routes are registered on one thread before the server starts. App.run()
calls freeze(); after that the table is never written again, so connection
threads read it without locks. Registering after freeze() raises
RouterFrozenError.

=============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .request import Request
from .response import Response


logger = logging.getLogger(__name__)


# A handler fills in the Response it is given and returns nothing
Handler = Callable[[Request, Response], None]


class RouterFrozenError(RuntimeError):
    """Raised when a route is registered after the server has started."""


class _NotFound:
    """Sentinel type returned by Router.match() when nothing matches."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


@dataclass(frozen=True)
class Route:
    """
    A (method, path) → handler binding.

    Attributes:
        method: HTTP method, case-sensitive ("GET").
        path: Normalized path ("/users").
        handler: Callable taking (request, response).
    """

    method: str
    path: str
    handler: Handler


def normalize_path(path: str) -> str:
    """
    Strip trailing slashes, keeping the root.

        "/users/" → "/users"
        "///"     → "/"
        ""        → "/"
    """
    stripped = path.rstrip("/")
    return stripped or "/"


class Router:
    """
    Exact-match HTTP router.

    ==========================================================================
    USAGE
    ==========================================================================

        router = Router()

        # Direct registration
        router.get("/", index)

        # Decorator registration
        @router.post("/users")
        def create_user(request, response):
            response.status = 201
            response.json([("id", 1)])

        handler = router.match("GET", "/")
        if handler is NOT_FOUND:
            ...

    ==========================================================================
    """

    def __init__(self):
        self._routes: Dict[Tuple[str, str], Route] = {}
        self._frozen = False

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, method: str, path: str, handler: Handler) -> Route:
        """
        Register a handler for (method, path).

        Re-registering an existing (method, normalized path) replaces the
        previous handler.

        Args:
            method: HTTP method, stored exactly as given.
            path: Route path; must start with "/".
            handler: Callable taking (request, response).

        Returns:
            The stored Route.

        Raises:
            RouterFrozenError: If the router has been frozen.
            ValueError: If method is empty or path does not start with "/".
            TypeError: If handler is not callable.
        """
        if self._frozen:
            raise RouterFrozenError(
                f"Cannot register {method} {path}: routes are read-only once the server starts"
            )
        if not method or not isinstance(method, str):
            raise ValueError(f"Invalid method: {method!r}")
        if not isinstance(path, str) or not path.startswith("/"):
            raise ValueError(f"Route path must start with '/': {path!r}")
        if not callable(handler):
            raise TypeError(f"Handler for {method} {path} is not callable: {handler!r}")

        route = Route(method=method, path=normalize_path(path), handler=handler)
        key = (route.method, route.path)

        if key in self._routes:
            logger.warning(f"Route {method} {route.path} registered twice; last registration wins")

        self._routes[key] = route
        return route

    add_route = register

    def route(
        self,
        path: str,
        method: str = "GET",
        handler: Optional[Handler] = None,
    ) -> Union[Handler, Callable[[Handler], Handler]]:
        """
        Register a route directly or as a decorator.

            router.route("/", "GET", index)      # direct

            @router.route("/", "GET")            # decorator
            def index(request, response):
                ...

        The decorator form returns the handler unchanged.
        """
        if handler is not None:
            self.register(method, path, handler)
            return handler

        def decorator(func: Handler) -> Handler:
            self.register(method, path, func)
            return func
        return decorator

    def get(self, path: str, handler: Optional[Handler] = None):
        """Register a GET route."""
        return self.route(path, "GET", handler)

    def post(self, path: str, handler: Optional[Handler] = None):
        """Register a POST route."""
        return self.route(path, "POST", handler)

    def put(self, path: str, handler: Optional[Handler] = None):
        """Register a PUT route."""
        return self.route(path, "PUT", handler)

    def delete(self, path: str, handler: Optional[Handler] = None):
        """Register a DELETE route."""
        return self.route(path, "DELETE", handler)

    def patch(self, path: str, handler: Optional[Handler] = None):
        """Register a PATCH route."""
        return self.route(path, "PATCH", handler)

    def head(self, path: str, handler: Optional[Handler] = None):
        """Register a HEAD route."""
        return self.route(path, "HEAD", handler)

    def options(self, path: str, handler: Optional[Handler] = None):
        """Register an OPTIONS route."""
        return self.route(path, "OPTIONS", handler)

    # =========================================================================
    # MATCHING
    # =========================================================================

    def match(self, method: str, path: str) -> Union[Handler, _NotFound]:
        """
        Find the handler for (method, path).

        Never raises for an unknown route; returns NOT_FOUND instead.
        """
        route = self._routes.get((method, normalize_path(path)))
        if route is None:
            return NOT_FOUND
        return route.handler

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def freeze(self) -> None:
        """Make the route table read-only. Idempotent."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def routes(self) -> List[Route]:
        """All routes, in registration order."""
        return list(self._routes.values())

    def __len__(self) -> int:
        return len(self._routes)

    def log_routes(self) -> None:
        """
        Log the route table at INFO.

        Example output:
            Registered routes:
              GET      /
              POST     /users
        """
        if not self._routes:
            logger.info("No routes registered")
            return
        lines = [f"  {route.method:8} {route.path}" for route in self._routes.values()]
        logger.info("Registered routes:\n" + "\n".join(lines))
