from typing import ClassVar, Union, Callable, TypeVar, Any, cast

T = TypeVar("T")


class Extra:
    """Defines the attributes used by decorators"""

    ON: ClassVar[str] = "_fileserve_on"
    ON_PRIORITY: ClassVar[str] = "_fileserve_on_priority"

    @staticmethod
    def Meta(function: Any) -> dict[str, Any]:
        """Returns the dictionary where the meta attributes of the given
        function are stored."""
        if not hasattr(function, "__dict__"):
            raise RuntimeError(f"Metadata cannot be attached to object: {function}")
        return cast(dict[str, Any], function.__dict__)


def on(
    priority: int = 0, **methods: Union[str, list[str], tuple[str, ...]]
) -> Callable[[T], T]:
    """The @on decorator marks a method as a request handler. It takes
    HTTP methods as keyword arguments, each given either a route or a list of
    routes (see `Route`). Methods can be joined with an underscore so that
    `GET_HEAD` registers the route for both.

    For instance:

    >    @on(GET_HEAD="/{path:rest}")

    implies that the wrapped method is like

    >    def read(self, request, path):
    >        ....

    and it must return a response, typically created with `request.respond(…)`."""

    def decorator(function: T) -> T:
        meta = Extra.Meta(function)
        v = meta.setdefault(Extra.ON, [])
        meta.setdefault(Extra.ON_PRIORITY, priority)
        for http_methods, url in list(methods.items()):
            urls = (url,) if type(url) not in (list, tuple) else url
            for http_method in http_methods.upper().split("_"):
                for _ in urls:
                    v.append((http_method, _))
        return function

    return decorator


# EOF
