"""
WSGI router built from composable path matchers.

Requests pass through guards, route handlers and response modifiers. Each of
them is selected by a matcher and ordered by priority, handler arguments are
injected by parameter name and converted by declared type.

License: MIT
"""

import copy
import enum
import functools
import inspect
import json
import logging
import re
import types
import typing
from dataclasses import asdict as dataclass_asdict, dataclass, field, is_dataclass
from http import HTTPStatus
from http.cookies import SimpleCookie
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl

from python_multipart.multipart import MultipartParser, parse_options_header

__all__ = [
    'AccessDeniedError', 'FormDataError', 'HTTPError', 'InvalidParameterError', 'NotFoundError',
    'QueryStringError',
    'CatchallMatcher', 'ComposableMatcher', 'ExactMatcher', 'MatchedRoute', 'Matcher', 'PatternMatcher',
    'PrefixMatcher', 'PrefixPatternMatcher', 'SuffixMatcher', 'SuffixPatternMatcher', 'TransformerMatcher',
    'FinalResponse', 'Priority', 'Request', 'Response', 'Router', 'UploadedFile', 'WsgiApp', 'WsgiAppConfig',
]

_CONTENT_LENGTH_HEADER = 'Content-Length'
_CONTENT_TYPE_HEADER = 'Content-Type'
_CACHE_CONTROL_HEADER = 'Cache-Control'
_CONTENT_TYPE_APPLICATION_JSON = 'application/json'
_CONTENT_TYPE_FORM_URLENCODED = 'application/x-www-form-urlencoded'
_CONTENT_TYPE_MULTIPART_FORM_DATA = 'multipart/form-data'
_CONTENT_TYPE_OCTET_STREAM = 'application/octet-stream'

_WSGI_CONTENT_LENGTH_HEADER = 'CONTENT_LENGTH'
_WSGI_CONTENT_TYPE_HEADER = 'CONTENT_TYPE'
_WSGI_PATH_INFO_HEADER = 'PATH_INFO'
_WSGI_REQUEST_METHOD_HEADER = 'REQUEST_METHOD'
_WSGI_SCRIPT_NAME_HEADER = 'SCRIPT_NAME'

_NO_DATA_BODY = b''
_NO_DATA_RESULT = _NO_DATA_BODY,

_STATUSES_WITHOUT_CONTENT = frozenset(
    (s for s in HTTPStatus if (s >= 100 and s < 200) or s in (HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED)),
)
_STATUS_ROW_FROM_CODE = {s.value: f'{s.value} {s.phrase}' for s in HTTPStatus}
_UNKNOWN_REASON_PHRASE = 'Unknown Status'
_NEVER_CACHE = 'no-store, no-cache, must-revalidate, max-age=0'

_PATH_SEPARATOR = '/'
_DEFAULT_ROUTE_METHODS = ('GET', 'POST')

# named pattern parameter, e.g. ":id" in "users/:id"
_PATTERN_PARAMETER = re.compile(r':([a-zA-Z_][a-zA-Z0-9_]*)')
_PATTERN_PARAMETER_VALUE = '([^/]+)'

_ERROR_BUILDER_KEY = re.compile(r'(?:\d{3}|\d{2}x|\dxx|default)')
_DEFAULT_ERROR_BUILDER_KEY = 'default'

_NUMERIC = re.compile(r'\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?\s*')
_BOOL_TRUE_VALUES = frozenset(('1', 'true', 'yes', 'on'))
_BOOL_FALSE_VALUES = frozenset(('0', 'false', 'no', 'off'))

_NONE_TYPE = type(None)
_EMPTY = inspect.Parameter.empty
_INJECTABLE_PARAMETER_KINDS = (inspect.Parameter.KEYWORD_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
_IGNORED_PARAMETER_KINDS = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)

_logger = logging.getLogger('wsgimatch')


class HTTPError(Exception):
    """Error carrying the HTTP status of the response it turns into."""

    def __init__(self, status: int, reason: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        self.status = int(status)
        self.reason = _reason_phrase(self.status) if reason is None else reason
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f'HTTP Error {self.status}: {self.reason}'


class NotFoundError(HTTPError):
    def __init__(self, path: str) -> None:
        super().__init__(HTTPStatus.NOT_FOUND, 'No route matched the request')
        self.path = path


class AccessDeniedError(HTTPError):
    def __init__(self) -> None:
        super().__init__(HTTPStatus.FORBIDDEN)


class InvalidParameterError(ValueError):
    """Handler parameter cannot be supplied from the matched route."""


class QueryStringError(ValueError):
    """Query string of the request is malformed."""


class FormDataError(ValueError):
    """Submitted form data is malformed."""


class Priority(enum.Enum):
    """Ordering bucket of guards, routes, modifiers and error response builders."""

    HIGH = 'high'
    NORMAL = 'normal'
    LOW = 'low'


@dataclass(frozen=True)
class MatchedRoute:
    """
    Result of a successful match.

    Parameter values are always the strings found in the path, conversion to
    handler parameter types happens when arguments are injected.
    """

    path: str
    request: Any = field(repr=False)
    parameters: Dict[str, str] = field(default_factory=dict)

    def has_parameter(self, name: str) -> bool:
        return name in self.parameters

    def parameter(self, name: str) -> Optional[str]:
        return self.parameters.get(name)


class Matcher:
    """Matches a normalized route path, returning None when it does not match."""

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        raise NotImplementedError


class ComposableMatcher(Matcher):
    """
    Matcher delegating part of the path to a child matcher.

    with_() never modifies the matcher it is called on, so one base matcher
    can be composed with many children::

        api = PrefixMatcher('api/')
        users = api.with_(PatternMatcher('users/:id'))
        posts = api.with_(PatternMatcher('posts/:id'))

    When the current child is composable itself, the new matcher is attached
    to the deepest composable matcher of the chain.
    """

    matcher: Optional[Matcher] = None

    def with_(self, matcher: Matcher) -> 'ComposableMatcher':
        composed = copy.copy(self)
        child = self.matcher
        composed.matcher = child.with_(matcher) if isinstance(child, ComposableMatcher) else matcher
        return composed

    def match_child(self, path: str, request: Any) -> Optional[Dict[str, str]]:
        """Parameters of child match, empty when there is no child, None when child rejects path."""
        if self.matcher is None:
            return {}

        child_match = self.matcher.match(path, request)
        return None if child_match is None else dict(child_match.parameters)


class ExactMatcher(Matcher):
    def __init__(self, path: str) -> None:
        self.path = path

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        return MatchedRoute(path, request) if path == self.path else None

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.path!r})'


class CatchallMatcher(Matcher):
    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        return MatchedRoute(path, request)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}()'


class PatternMatcher(Matcher):
    """
    Matches paths against a template with named parameters.

    Parameters are marked with colon (":id") and match one or more characters
    except "/". Pattern "posts/:post_id/comments/:id" matches path
    "posts/1/comments/2" with parameters post_id="1" and id="2".
    """

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern

    @functools.cached_property
    def compiled(self) -> Tuple[re.Pattern, Tuple[str, ...]]:
        return _compile_pattern(self.pattern, anchor_start=True, anchor_end=True)

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        regex, parameter_names = self.compiled
        m = regex.search(path)
        if m is None:
            return None

        return MatchedRoute(path, request, dict(zip(parameter_names, m.groups())))

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.pattern!r})'


class PrefixMatcher(ComposableMatcher):
    """
    Matches paths starting with literal prefix.

    The remainder after prefix is matched by child matcher and captured as
    parameter (default "prefix_remainder", None disables capturing). Captured
    remainder overrides child parameter with the same name.
    """

    def __init__(self, prefix: str, capture: Optional[str] = 'prefix_remainder',
                 matcher: Optional[Matcher] = None) -> None:
        self.prefix = prefix
        self.capture = capture
        self.matcher = matcher

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        if not path.startswith(self.prefix):
            return None

        remainder = path[len(self.prefix):]
        parameters = self.match_child(remainder, request)
        if parameters is None:
            return None

        if self.capture is not None:
            parameters[self.capture] = remainder
        return MatchedRoute(path, request, parameters)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.prefix!r}, capture={self.capture!r}, matcher={self.matcher!r})'


class SuffixMatcher(ComposableMatcher):
    """
    Matches paths ending with literal suffix.

    The base before suffix is matched by child matcher and captured as
    parameter (default "suffix_base", None disables capturing).
    """

    def __init__(self, suffix: str, capture: Optional[str] = 'suffix_base',
                 matcher: Optional[Matcher] = None) -> None:
        self.suffix = suffix
        self.capture = capture
        self.matcher = matcher

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        if not path.endswith(self.suffix):
            return None

        base = path[:len(path) - len(self.suffix)]
        parameters = self.match_child(base, request)
        if parameters is None:
            return None

        if self.capture is not None:
            parameters[self.capture] = base
        return MatchedRoute(path, request, parameters)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.suffix!r}, capture={self.capture!r}, matcher={self.matcher!r})'


class PrefixPatternMatcher(ComposableMatcher):
    """
    Matches paths starting with pattern, see PatternMatcher for pattern syntax.

    Trailing separator is not added to pattern: "tenants/:tenant" matches
    "tenants/acme/users" with remainder "/users". Parameters of child matcher
    override pattern parameters, captured remainder overrides both.
    """

    def __init__(self, prefix_pattern: str, capture: Optional[str] = 'prefix_remainder',
                 matcher: Optional[Matcher] = None) -> None:
        self.prefix_pattern = prefix_pattern
        self.capture = capture
        self.matcher = matcher

    @functools.cached_property
    def compiled(self) -> Tuple[re.Pattern, Tuple[str, ...]]:
        return _compile_pattern(self.prefix_pattern, anchor_start=True, anchor_end=False)

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        regex, parameter_names = self.compiled
        m = regex.search(path)
        if m is None:
            return None

        remainder = path[m.end():]
        child_parameters = self.match_child(remainder, request)
        if child_parameters is None:
            return None

        parameters = {**dict(zip(parameter_names, m.groups())), **child_parameters}
        if self.capture is not None:
            parameters[self.capture] = remainder
        return MatchedRoute(path, request, parameters)

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}({self.prefix_pattern!r}, '
                f'capture={self.capture!r}, matcher={self.matcher!r})')


class SuffixPatternMatcher(ComposableMatcher):
    """Matches paths ending with pattern, mirror image of PrefixPatternMatcher."""

    def __init__(self, suffix_pattern: str, capture: Optional[str] = 'suffix_remainder',
                 matcher: Optional[Matcher] = None) -> None:
        self.suffix_pattern = suffix_pattern
        self.capture = capture
        self.matcher = matcher

    @functools.cached_property
    def compiled(self) -> Tuple[re.Pattern, Tuple[str, ...]]:
        return _compile_pattern(self.suffix_pattern, anchor_start=False, anchor_end=True)

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        regex, parameter_names = self.compiled
        m = regex.search(path)
        if m is None:
            return None

        remainder = path[:m.start()]
        child_parameters = self.match_child(remainder, request)
        if child_parameters is None:
            return None

        parameters = {**dict(zip(parameter_names, m.groups())), **child_parameters}
        if self.capture is not None:
            parameters[self.capture] = remainder
        return MatchedRoute(path, request, parameters)

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}({self.suffix_pattern!r}, '
                f'capture={self.capture!r}, matcher={self.matcher!r})')


class TransformerMatcher(ComposableMatcher):
    """
    Transforms path before matching it with child matcher.

    Transformer returning None rejects the path. Without child matcher nothing
    matches. Matched route carries the transformed path, original path is
    captured as parameter (default "original_path", None disables capturing).

    Case-insensitive routes::

        lower = TransformerMatcher(str.lower)
        router.get(lower.with_(ExactMatcher('about')), about)
    """

    def __init__(self, transformer: Callable[[str], Optional[str]], capture: Optional[str] = 'original_path',
                 matcher: Optional[Matcher] = None) -> None:
        self.transformer = transformer
        self.capture = capture
        self.matcher = matcher

    def match(self, path: str, request: Any) -> Optional[MatchedRoute]:
        if self.matcher is None:
            return None

        transformed_path = self.transformer(path)
        if transformed_path is None:
            return None

        parameters = self.match_child(transformed_path, request)
        if parameters is None:
            return None

        if self.capture is not None:
            parameters[self.capture] = path
        return MatchedRoute(transformed_path, request, parameters)

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}({self.transformer!r}, '
                f'capture={self.capture!r}, matcher={self.matcher!r})')


class Response:
    """
    Response produced by router.

    Content is converted to body by WsgiApp: str is text, dict, list and
    dataclass instances are json, bytes need explicit Content-Type header and
    generators are streamed as is.
    """

    def __init__(self, content: Any = None, status: int = HTTPStatus.OK, headers: Optional[dict] = None) -> None:
        self.content = content
        self.status = int(status)
        self.headers = dict(headers) if headers else {}

    @property
    def reason(self) -> str:
        return _reason_phrase(self.status)

    def cache_never(self) -> 'Response':
        self.headers[_CACHE_CONTROL_HEADER] = _NEVER_CACHE
        return self

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} {self.status} {self.content!r}>'


class FinalResponse(Response):
    """Response skipping all remaining response modifiers."""


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    content: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.content)


class Request:
    def __init__(self, config: Optional['WsgiAppConfig'], environ: dict) -> None:
        self.config = config
        self.environ = environ

    @functools.cached_property
    def method(self) -> str:
        return self.environ[_WSGI_REQUEST_METHOD_HEADER]

    @functools.cached_property
    def path(self) -> str:
        # full path, application mount point included
        return self.environ.get(_WSGI_SCRIPT_NAME_HEADER, '') + self.environ.get(_WSGI_PATH_INFO_HEADER, '')

    @functools.cached_property
    def content_length(self) -> int:
        try:
            return int(self.environ[_WSGI_CONTENT_LENGTH_HEADER])
        except KeyError:
            return 0
        except ValueError as e:
            raise HTTPError(HTTPStatus.BAD_REQUEST, 'Invalid Content-Length') from e

    @functools.cached_property
    def content_type(self) -> Optional[str]:
        # rfc3875 media-type parts type / subtype are case-insensitive
        return _parse_header(self.environ.get(_WSGI_CONTENT_TYPE_HEADER))

    @functools.cached_property
    def cookies(self) -> SimpleCookie:
        return SimpleCookie(self.environ.get('HTTP_COOKIE'))

    @functools.cached_property
    def body(self) -> bytes:
        if _WSGI_CONTENT_LENGTH_HEADER not in self.environ:
            raise HTTPError(HTTPStatus.LENGTH_REQUIRED)

        content_length = self.content_length
        if content_length < 0:
            raise HTTPError(HTTPStatus.BAD_REQUEST, 'Content-Length contains negative length')

        if content_length == 0:
            return _NO_DATA_BODY

        max_content_length = self.config.max_content_length if self.config is not None else None
        if max_content_length is not None and max_content_length < content_length:
            raise HTTPError(HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

        return self.environ['wsgi.input'].read(content_length)

    @functools.cached_property
    def form(self) -> Mapping:
        content_type = self.content_type
        if content_type == _CONTENT_TYPE_FORM_URLENCODED:
            body = self.body
            if not body:
                return {}

            try:
                return _first_values(parse_qsl(body.decode(), keep_blank_values=True, strict_parsing=True))
            except ValueError as e:
                raise FormDataError('Malformed form data') from e

        if content_type == _CONTENT_TYPE_MULTIPART_FORM_DATA:
            return _parse_multipart(self.body, self.environ[_WSGI_CONTENT_TYPE_HEADER])

        raise HTTPError(HTTPStatus.UNSUPPORTED_MEDIA_TYPE)

    @functools.cached_property
    def json(self) -> Any:
        if self.content_type != _CONTENT_TYPE_APPLICATION_JSON:
            raise HTTPError(HTTPStatus.UNSUPPORTED_MEDIA_TYPE)

        deserializer = self.config.json_deserializer if self.config is not None else json.loads
        try:
            return deserializer(self.body)
        except ValueError as e:
            raise HTTPError(HTTPStatus.BAD_REQUEST, 'Malformed JSON') from e

    @functools.cached_property
    def query_parameters(self) -> dict:
        qs = self.environ.get('QUERY_STRING')
        if not qs:
            return {}

        try:
            return _first_values(parse_qsl(qs, keep_blank_values=True, strict_parsing=True))
        except ValueError as e:
            raise QueryStringError(f'Malformed query string {qs!r}') from e


class _HandlerParameter:
    __slots__ = ('name', 'types', 'default', 'accepts_none')

    def __init__(self, name: str, types: Tuple[Any, ...], default: Any, accepts_none: bool) -> None:
        self.name = name
        self.types = types
        self.default = default
        self.accepts_none = accepts_none


class _Registration:
    """Matcher and handler of guard, route, modifier or error response builder."""

    __slots__ = ('matcher', 'handler', 'methods', 'parameters')

    def __init__(self, matcher: Matcher, handler: Callable, methods: Optional[frozenset]) -> None:
        self.matcher = matcher
        self.handler = handler
        self.methods = methods
        self.parameters = _handler_parameters(handler)

    def accepts(self, method: str) -> bool:
        return self.methods is None or method in self.methods


_Buckets = Dict[Priority, List[_Registration]]


def _convert_int(value: str) -> Optional[int]:
    try:
        converted = int(value)
    except ValueError:
        return None

    # canonical form only, no plus sign, padding, whitespace or underscores
    return converted if str(converted) == value else None


def _convert_float(value: str) -> Optional[float]:
    return float(value) if _NUMERIC.fullmatch(value) else None


def _convert_bool(value: str) -> Optional[bool]:
    value = value.lower()
    if value in _BOOL_TRUE_VALUES:
        return True
    if value in _BOOL_FALSE_VALUES:
        return False
    return None


def _convert_str(value: str) -> str:
    return value


_DEFAULT_TYPE_HANDLERS: Dict[Any, Callable[[str], Any]] = {
    int: _convert_int,
    float: _convert_float,
    bool: _convert_bool,
    str: _convert_str,
}


class Router:
    """
    Router running guards, routes and response modifiers for request.

    Guards run first. Guard returning True allows access, False denies it with
    403 response, None defers to next guard. Routes run next, first handler
    returning something else than None produces the response, 404 is returned
    when none of them does. Modifiers run last and may replace the response.

    Handler parameters are injected by name:

    - path: matched path
    - request: the request, also when untyped
    - response: current response (modifiers only), also when untyped
    - exception: the HTTPError being rendered (error response builders only), also when untyped
    - anything else: route parameter converted to declared type

    Parameter that cannot be supplied results in 400 response unless it has
    default value or accepts None.
    """

    def __init__(self) -> None:
        self.guards: _Buckets = _buckets()
        self.routes: _Buckets = _buckets()
        self.modifiers: _Buckets = _buckets()
        self.error_response_builders: Dict[str, _Buckets] = {}
        self.type_handlers: Dict[Any, Callable[[str], Any]] = _DEFAULT_TYPE_HANDLERS.copy()
        self.exception_class_handlers: Dict[type, Callable[[BaseException], HTTPError]] = {}
        self.extractor: Optional[Callable[[Any], str]] = None
        self.normalizer: Optional[Callable[[str], str]] = None
        self.logger: Union[logging.Logger, logging.LoggerAdapter] = _logger

        self.exception_class_handler(HTTPError, lambda e: e)
        self.exception_class_handler(
            InvalidParameterError, lambda e: HTTPError(HTTPStatus.BAD_REQUEST, 'Invalid URL parameter', e),
        )
        self.exception_class_handler(
            QueryStringError, lambda e: HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, 'Invalid URL query parameter', e),
        )
        self.exception_class_handler(
            FormDataError, lambda e: HTTPError(HTTPStatus.BAD_REQUEST, 'Invalid POST data', e),
        )

    def add(self,
            matcher: Matcher,
            handler: Optional[Callable] = None,
            methods: Union[str, Iterable[str], None] = _DEFAULT_ROUTE_METHODS,
            priority: Priority = Priority.NORMAL) -> Callable:
        """
        Add route handler, returns the handler.

        Without handler returns decorator::

            @router.add(PatternMatcher('users/:id'), methods=('GET', 'PUT'))
            def user(id: int) -> Response:
                ...
        """
        if handler is None:
            return functools.partial(self.add, matcher, methods=methods, priority=priority)

        if methods is None:
            methods = _DEFAULT_ROUTE_METHODS
        return _register(self.routes, matcher, handler, _method_set(methods), priority)

    def get(self, matcher: Matcher, handler: Optional[Callable] = None,
            priority: Priority = Priority.NORMAL) -> Callable:
        return self.add(matcher, handler, 'GET', priority)

    def post(self, matcher: Matcher, handler: Optional[Callable] = None,
             priority: Priority = Priority.NORMAL) -> Callable:
        return self.add(matcher, handler, 'POST', priority)

    def put(self, matcher: Matcher, handler: Optional[Callable] = None,
            priority: Priority = Priority.NORMAL) -> Callable:
        return self.add(matcher, handler, 'PUT', priority)

    def patch(self, matcher: Matcher, handler: Optional[Callable] = None,
              priority: Priority = Priority.NORMAL) -> Callable:
        return self.add(matcher, handler, 'PATCH', priority)

    def delete(self, matcher: Matcher, handler: Optional[Callable] = None,
               priority: Priority = Priority.NORMAL) -> Callable:
        return self.add(matcher, handler, 'DELETE', priority)

    def guard(self,
              matcher: Matcher,
              handler: Optional[Callable] = None,
              methods: Union[str, Iterable[str], None] = None,
              priority: Priority = Priority.NORMAL) -> Callable:
        """Add access check, None as methods applies it to all request methods."""
        if handler is None:
            return functools.partial(self.guard, matcher, methods=methods, priority=priority)

        return _register(self.guards, matcher, handler, _method_set(methods), priority)

    def modify(self,
               matcher: Matcher,
               handler: Optional[Callable] = None,
               methods: Union[str, Iterable[str], None] = None,
               priority: Priority = Priority.NORMAL) -> Callable:
        """
        Add response modifier, None as methods applies it to all request methods.

        Modifier returning None keeps current response, FinalResponse stops
        running remaining modifiers.
        """
        if handler is None:
            return functools.partial(self.modify, matcher, methods=methods, priority=priority)

        return _register(self.modifiers, matcher, handler, _method_set(methods), priority)

    def add_error_response_builder(self,
                                   status_pattern: Union[str, int],
                                   handler: Optional[Callable] = None,
                                   matcher: Optional[Matcher] = None,
                                   priority: Priority = Priority.NORMAL) -> Callable:
        """
        Add builder of error responses.

        Status pattern is status code ("404"), group of ten ("40x"), class
        ("4xx") or "default". More specific pattern wins over priority.
        Builder is used only for paths accepted by matcher, by default for all.
        """
        key = str(status_pattern)
        if not _ERROR_BUILDER_KEY.fullmatch(key):
            raise ValueError(f'Invalid status pattern {status_pattern!r}')

        if handler is None:
            return functools.partial(self.add_error_response_builder, key, matcher=matcher, priority=priority)

        buckets = self.error_response_builders.get(key)
        if buckets is None:
            self.error_response_builders[key] = buckets = _buckets()
        return _register(buckets, CatchallMatcher() if matcher is None else matcher, handler, None, priority)

    def type_handler(self, type_: Any, handler: Optional[Callable[[str], Any]]) -> None:
        """Set string conversion function of type, converter returns None for invalid value. None removes it."""
        if handler is None:
            self.type_handlers.pop(type_, None)
        else:
            self.type_handlers[type_] = handler

    def exception_class_handler(self,
                                exception_class: type,
                                handler: Optional[Callable[[Any], HTTPError]]) -> None:
        """
        Set function converting exceptions of class to HTTPError. None removes it.

        Handler of exact class is preferred over handler of superclass, otherwise
        earlier registration wins.
        """
        if handler is None:
            self.exception_class_handlers.pop(exception_class, None)
        else:
            self.exception_class_handlers[exception_class] = handler

    def route_extractor(self, extractor: Optional[Callable[[Any], str]]) -> None:
        self.extractor = extractor

    def route_normalizer(self, normalizer: Optional[Callable[[str], str]]) -> None:
        self.normalizer = normalizer

    def extract_route(self, request: Any) -> str:
        """Route path of request, by default full path of the request."""
        route = request.path if self.extractor is None else self.extractor(request)
        return self.normalize_route(route)

    def normalize_route(self, route: str) -> str:
        if self.normalizer is not None:
            route = self.normalizer(route)

        # always applied, root path is empty string
        return route.strip(_PATH_SEPARATOR)

    def run(self, request: Any) -> Response:
        try:
            path = self.extract_route(request)
        except Exception as exc:  # noqa: B902
            self.logger.exception('Route extraction failed', exc_info=exc)
            return self.basic_error_response(
                HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, 'Error extracting route from request', exc),
            )

        try:
            self.run_guards(path, request)
        except Exception as exc:  # noqa: B902
            response = self.error_response(exc, path, request)
        else:
            try:
                response = self.run_routes(path, request)
            except Exception as exc:  # noqa: B902
                response = self.error_response(exc, path, request)
            else:
                if isinstance(response, FinalResponse):
                    return response

        try:
            return self.run_modifiers(path, request, response)
        except Exception as exc:  # noqa: B902
            return self.error_response(exc, path, request)

    def run_guards(self, path: str, request: Any) -> None:
        for registration, match in self.matching(self.guards, path, request):
            result = registration.handler(**self.bind(registration.parameters, match))
            if result is None:
                continue

            if not result:
                raise AccessDeniedError()
            break

    def run_routes(self, path: str, request: Any) -> Response:
        for registration, match in self.matching(self.routes, path, request):
            result = registration.handler(**self.bind(registration.parameters, match))
            if result is not None:
                return _as_response(result)

        return self.error_response(NotFoundError(path), path, request)

    def run_modifiers(self, path: str, request: Any, response: Response) -> Response:
        for registration, match in self.matching(self.modifiers, path, request):
            result = registration.handler(**self.bind(registration.parameters, match, response=response))
            if result is not None:
                response = _as_response(result)
            if isinstance(response, FinalResponse):
                break

        return response

    def matching(self, buckets: _Buckets, path: str, request: Any) -> Iterator[Tuple[_Registration, MatchedRoute]]:
        """Registrations accepting request in priority order, lazily matched."""
        method = request.method
        for registrations in buckets.values():
            for registration in registrations:
                if not registration.accepts(method):
                    continue

                match = registration.matcher.match(path, request)
                if match is not None:
                    yield registration, match

    def bind(self,
             parameters: Iterable[_HandlerParameter],
             match: MatchedRoute,
             response: Optional[Response] = None,
             exception: Optional[HTTPError] = None) -> Dict[str, Any]:
        """Keyword arguments of handler with given parameters."""
        kwargs: Dict[str, Any] = {}
        for parameter in parameters:
            name = parameter.name
            parameter_types = parameter.types
            if name == 'path':
                if not parameter_types or str in parameter_types:
                    kwargs[name] = match.path
                    continue
                if not match.has_parameter(name):
                    kwargs[name] = self.convert(match.path, parameter_types)
                    continue
            elif name == 'request':
                if _accepts(parameter_types, match.request):
                    kwargs[name] = match.request
                    continue
            elif name == 'response':
                if response is not None and _accepts(parameter_types, response):
                    kwargs[name] = response
                    continue
            elif name == 'exception':
                if exception is not None and _accepts(parameter_types, exception):
                    kwargs[name] = exception
                    continue

            if match.has_parameter(name):
                kwargs[name] = self.convert(match.parameters[name], parameter_types)
            elif parameter.default is not _EMPTY:
                # left to the handler default
                continue
            elif parameter.accepts_none:
                kwargs[name] = None
            else:
                raise InvalidParameterError(
                    f'Handler parameter "{name}" is required but was not provided by the matcher'
                )

        return kwargs

    def convert(self, value: str, parameter_types: Tuple[Any, ...]) -> Any:
        """Convert value to first of the types accepting it."""
        if not parameter_types:
            return value

        for parameter_type in parameter_types:
            converter = self.type_handlers.get(parameter_type)
            if converter is not None:
                converted = converter(value)
                if converted is not None:
                    return converted

        type_names = ', '.join(getattr(t, '__name__', repr(t)) for t in parameter_types)
        raise InvalidParameterError(f'Handler parameter could not be converted to any of the types: {type_names}')

    def resolve_exception(self, error: BaseException) -> HTTPError:
        handlers = self.exception_class_handlers
        handler = handlers.get(type(error))
        if handler is None:
            handler = next(
                (h for exception_class, h in handlers.items() if isinstance(error, exception_class)),
                self.unhandled_exception,
            )

        http_error = handler(error)
        if not isinstance(http_error, HTTPError):
            raise RuntimeError(
                f'Exception handler for {type(error).__name__} returned {http_error!r} instead of HTTPError'
            )
        return http_error

    def unhandled_exception(self, error: BaseException) -> HTTPError:
        self.logger.exception('Unhandled exception', exc_info=error)
        return HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, cause=error)

    def error_response(self, error: BaseException, path: str, request: Any) -> Response:
        """Response for error, built by most specific error response builder accepting it."""
        http_error = self.resolve_exception(error)
        try:
            response = self.build_error_response(http_error, path, request)
        except Exception as exc:  # noqa: B902
            self.logger.exception('Error response builder failed for %s', http_error.status, exc_info=exc)
            return self.basic_error_response(http_error)

        return self.basic_error_response(http_error) if response is None else response

    def build_error_response(self, http_error: HTTPError, path: str, request: Any) -> Optional[Response]:
        for key in _error_builder_keys(http_error.status):
            buckets = self.error_response_builders.get(key)
            if buckets is None:
                continue

            for registration, match in self.matching(buckets, path, request):
                result = registration.handler(**self.bind(registration.parameters, match, exception=http_error))
                if result is not None:
                    # plain content keeps the error status
                    return _as_response(result, http_error.status)

        return None

    def basic_error_response(self, http_error: HTTPError) -> Response:
        response = Response(f'Error {http_error.status}: {http_error.reason}', http_error.status)
        return response.cache_never()


def _default_response_handler(config: 'WsgiAppConfig', environ: dict, response: Response) -> Tuple[int, Iterable, dict]:
    status = response.status
    headers = dict(response.headers)
    content = response.content

    if status in _STATUSES_WITHOUT_CONTENT:
        if content is not None:
            raise ValueError(f'Unexpected content {content!r} for {status} response')

        return status, _NO_DATA_RESULT, headers

    if content is None:
        result = _NO_DATA_RESULT
        headers[_CONTENT_LENGTH_HEADER] = '0'
    elif isinstance(content, (dict, list)):
        result = _json_result_handler(config, content, headers)
    elif isinstance(content, bytes):
        if _CONTENT_TYPE_HEADER not in headers:
            raise ValueError('Unknown content type for binary content')

        result = content,
        headers[_CONTENT_LENGTH_HEADER] = str(len(content))
    elif isinstance(content, str):
        result = content.encode(),
        headers.setdefault(_CONTENT_TYPE_HEADER, config.default_str_content_type)
        headers[_CONTENT_LENGTH_HEADER] = str(len(result[0]))
    elif isinstance(content, types.GeneratorType):
        result = content
    elif is_dataclass(content) and not isinstance(content, type):
        result = _json_result_handler(config, dataclass_asdict(content), headers)
    else:
        raise ValueError(f'Unknown content {content!r}')

    return status, result, headers


def _json_result_handler(config: 'WsgiAppConfig', content: Any, headers: dict) -> Tuple[bytes]:
    body = config.json_serializer(content)
    headers.setdefault(_CONTENT_TYPE_HEADER, _CONTENT_TYPE_APPLICATION_JSON)
    headers[_CONTENT_LENGTH_HEADER] = str(len(body))
    return body,


def _json_dumps_adapter(obj: Any) -> bytes:
    # always utf-8: https://tools.ietf.org/html/rfc8259#section-8.1
    return json.dumps(obj).encode()


@dataclass
class WsgiAppConfig:
    json_deserializer: Callable[[bytes], Any] = staticmethod(json.loads)
    json_serializer: Callable[[Any], bytes] = staticmethod(_json_dumps_adapter)
    request_factory: Callable[['WsgiAppConfig', dict], Any] = Request
    response_handler: Callable[['WsgiAppConfig', dict, Response],
                               Tuple[int, Iterable, dict]] = staticmethod(_default_response_handler)
    default_str_content_type: str = 'text/plain;charset=utf-8'
    logger: Union[logging.Logger, logging.LoggerAdapter] = _logger
    max_content_length: Optional[int] = None


class WsgiApp:
    def __init__(self, router: Router, config: Optional[WsgiAppConfig] = None) -> None:
        self.router = router
        self.config = config or WsgiAppConfig()

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> Iterable:
        request = self.config.request_factory(self.config, environ)
        response = self.router.run(request)

        try:
            status, result, response_headers = self.config.response_handler(self.config, environ, response)
        except Exception as exc:  # noqa: B902
            self.config.logger.exception('Response conversion failed', exc_info=exc)
            status, result, response_headers = self.config.response_handler(
                self.config, environ, self.router.basic_error_response(HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR)),
            )

        if environ.get(_WSGI_REQUEST_METHOD_HEADER) == 'HEAD':
            # generator content is never started
            result_close = getattr(result, 'close', None)
            if result_close is not None:
                result_close()
            result = _NO_DATA_RESULT

        start_response(_status_row(status), [*response_headers.items()])
        return result


def _buckets() -> _Buckets:
    return {priority: [] for priority in Priority}


def _register(buckets: _Buckets, matcher: Matcher, handler: Callable, methods: Optional[frozenset],
              priority: Priority) -> Callable:
    if not isinstance(matcher, Matcher):
        raise ValueError(f'{handler!r}: invalid matcher {matcher!r}')
    if not isinstance(priority, Priority):
        raise ValueError(f'{handler!r}: invalid priority {priority!r}')

    buckets[priority].append(_Registration(matcher, handler, methods))
    return handler


def _method_set(methods: Union[str, Iterable[str], None]) -> Optional[frozenset]:
    if methods is None:
        return None

    if isinstance(methods, str):
        methods = (methods,)
    method_set = frozenset(str(m).upper() for m in methods)
    if not method_set:
        raise ValueError('No methods defined')
    return method_set


def _handler_parameters(handler: Callable) -> Tuple[_HandlerParameter, ...]:
    signature = inspect.signature(handler, eval_str=True)
    parameters = []
    for p in signature.parameters.values():
        if p.kind in _IGNORED_PARAMETER_KINDS:
            continue
        if p.kind not in _INJECTABLE_PARAMETER_KINDS:
            raise ValueError(f'{handler!r}: positional-only parameter {p.name} cannot be injected')

        parameter_types, accepts_none = _declared_types(p.annotation)
        parameters.append(_HandlerParameter(p.name, parameter_types, p.default, accepts_none))

    return tuple(parameters)


def _declared_types(annotation: Any) -> Tuple[Tuple[Any, ...], bool]:
    """Types of annotation and whether None is accepted."""
    if annotation is _EMPTY or annotation is Any:
        return (), True

    # unwrap Optional[x], Union[x, y] and x | y
    origin = typing.get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        union_args = typing.get_args(annotation)
        parameter_types = tuple(a for a in union_args if a is not _NONE_TYPE)
        if Any in parameter_types:
            return (), True
        return parameter_types, _NONE_TYPE in union_args

    return (annotation,), False


def _accepts(parameter_types: Tuple[Any, ...], value: Any) -> bool:
    if not parameter_types:
        return True

    return any(isinstance(t, type) and isinstance(value, t) for t in parameter_types)


def _as_response(result: Any, status: int = HTTPStatus.OK) -> Response:
    if isinstance(result, Response):
        return result

    if isinstance(result, tuple):
        # shortcut for returning status code and optional content/headers
        tuple_length = len(result)
        if tuple_length < 1 or tuple_length > 3:
            raise ValueError(f'Invalid result tuple: {result}: supported status[, content[, headers]]')
        status = result[0]
        if not isinstance(status, int):
            raise ValueError(f'Invalid type of status: {status}')
        return Response(
            result[1] if tuple_length > 1 else None,
            status,
            result[2] if tuple_length > 2 else None,
        )

    return Response(result, status)


def _compile_pattern(pattern: str, anchor_start: bool, anchor_end: bool) -> Tuple[re.Pattern, Tuple[str, ...]]:
    parts = []
    parameter_names = []
    position = 0
    for m in _PATTERN_PARAMETER.finditer(pattern):
        parts.append(re.escape(pattern[position:m.start()]))
        parts.append(_PATTERN_PARAMETER_VALUE)
        parameter_names.append(m.group(1))
        position = m.end()
    parts.append(re.escape(pattern[position:]))

    regex = ''.join(parts)
    if anchor_start:
        regex = r'\A' + regex
    if anchor_end:
        regex += r'\Z'
    return re.compile(regex), tuple(parameter_names)


def _error_builder_keys(status: int) -> Tuple[str, ...]:
    return str(status), f'{status // 10}x', f'{status // 100}xx', _DEFAULT_ERROR_BUILDER_KEY


def _reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return _UNKNOWN_REASON_PHRASE


def _status_row(status: int) -> str:
    return _STATUS_ROW_FROM_CODE.get(status) or f'{status} {_UNKNOWN_REASON_PHRASE}'


def _first_values(pairs: Iterable[Tuple[str, Any]]) -> dict:
    # XXX return single/first value for each parameter only
    data: Dict[str, Any] = {}
    for name, value in pairs:
        if name not in data:
            data[name] = value
    return data


def _parse_multipart(body: bytes, content_type: str) -> Dict[str, Any]:
    _, options = parse_options_header(content_type)
    boundary = options.get(b'boundary')
    if not boundary:
        raise FormDataError('Multipart form data without boundary')

    parts: List[Tuple[str, Any]] = []
    part_headers: Dict[str, str] = {}
    header_field = bytearray()
    header_value = bytearray()
    part_data = bytearray()

    def on_part_begin() -> None:
        part_headers.clear()
        part_data.clear()

    def on_header_field(data: bytes, start: int, end: int) -> None:
        header_field.extend(data[start:end])

    def on_header_value(data: bytes, start: int, end: int) -> None:
        header_value.extend(data[start:end])

    def on_header_end() -> None:
        part_headers[header_field.decode('latin-1').lower()] = header_value.decode('latin-1')
        header_field.clear()
        header_value.clear()

    def on_part_data(data: bytes, start: int, end: int) -> None:
        part_data.extend(data[start:end])

    def on_part_end() -> None:
        _, disposition = parse_options_header(part_headers.get('content-disposition', ''))
        name = disposition.get(b'name')
        if name is None:
            return

        filename = disposition.get(b'filename')
        if filename is None:
            value = part_data.decode()
        else:
            value = UploadedFile(
                filename.decode(),
                part_headers.get('content-type', _CONTENT_TYPE_OCTET_STREAM),
                bytes(part_data),
            )
        parts.append((name.decode(), value))

    parser = MultipartParser(boundary, {
        'on_part_begin': on_part_begin,
        'on_header_field': on_header_field,
        'on_header_value': on_header_value,
        'on_header_end': on_header_end,
        'on_part_data': on_part_data,
        'on_part_end': on_part_end,
    })
    try:
        parser.write(body)
        parser.finalize()
    except ValueError as e:
        raise FormDataError('Malformed multipart form data') from e

    return _first_values(parts)


def _parse_header(header: Optional[str]) -> Optional[str]:
    # pretend all header values are case-insensitive
    return header.split(';', 1)[0].strip().lower() if header else None
