"""Tests for handler parameter injection and conversion."""

import uuid
from http import HTTPStatus
from typing import Any, Optional, Union

import pytest

from wsgimatch import (
    CatchallMatcher, ExactMatcher, HTTPError, InvalidParameterError, MatchedRoute, PatternMatcher, Priority, Request,
    Response, Router,
)


def _request(path, method='GET'):
    return Request(None, {'REQUEST_METHOD': method, 'PATH_INFO': path})


def _bind(router, handler, match, **kwargs):
    router.get(CatchallMatcher(), handler)
    registration = router.routes[Priority.NORMAL][-1]
    return router.bind(registration.parameters, match, **kwargs)


@pytest.mark.parametrize('value,expected', [
    ('0', 0),
    ('42', 42),
    ('-7', -7),
])
def test_int(value, expected):
    def handler(id: int):
        return {'id': id}

    router = Router()
    router.get(PatternMatcher('items/:id'), handler)
    assert router.run(_request(f'/items/{value}')).content == {'id': expected}


@pytest.mark.parametrize('value', ['abc', '123abc', '01', '1.5', '007', '+1', '1_000', '', ' 1'])
def test_int_invalid(value):
    assert Router().type_handlers[int](value) is None


@pytest.mark.parametrize('value,expected', [
    ('1.5', 1.5),
    ('-0.25', -0.25),
    ('3', 3.0),
    ('1e3', 1000.0),
    ('.5', 0.5),
])
def test_float(value, expected):
    assert Router().type_handlers[float](value) == expected


@pytest.mark.parametrize('value', ['abc', 'nan', 'inf', '1.5.2', '0x10', ''])
def test_float_invalid(value):
    assert Router().type_handlers[float](value) is None


@pytest.mark.parametrize('value,expected', [
    ('1', True), ('true', True), ('Yes', True), ('ON', True),
    ('0', False), ('false', False), ('no', False), ('Off', False),
])
def test_bool(value, expected):
    assert Router().type_handlers[bool](value) is expected


@pytest.mark.parametrize('value', ['2', 'y', 'enabled', ''])
def test_bool_invalid(value):
    assert Router().type_handlers[bool](value) is None


def test_str():
    assert Router().type_handlers[str]('as is') == 'as is'


def test_union_first_successful_conversion():
    router = Router()

    def handler(key: Union[int, str]):
        return {'key': key}

    router.get(PatternMatcher('keys/:key'), handler)

    assert router.run(_request('/keys/10')).content == {'key': 10}
    assert router.run(_request('/keys/ten')).content == {'key': 'ten'}


def test_union_operator():
    router = Router()

    def handler(flag: bool | int):
        return {'flag': flag}

    router.get(PatternMatcher('flags/:flag'), handler)

    assert router.run(_request('/flags/1')).content == {'flag': True}
    assert router.run(_request('/flags/5')).content == {'flag': 5}
    assert router.run(_request('/flags/x')).status == HTTPStatus.BAD_REQUEST


def test_untyped_parameter_is_string():
    router = Router()

    def handler(id, name: Any):
        return {'id': id, 'name': name}

    router.get(PatternMatcher('users/:id/:name'), handler)

    assert router.run(_request('/users/1/joe')).content == {'id': '1', 'name': 'joe'}


def test_unknown_type_is_invalid():
    router = Router()

    def handler(id: uuid.UUID):
        return str(id)

    router.get(PatternMatcher('things/:id'), handler)

    assert router.run(_request(f'/things/{uuid.uuid4()}')).status == HTTPStatus.BAD_REQUEST


def test_custom_type_handler():
    router = Router()
    router.type_handler(uuid.UUID, _parse_uuid)

    def handler(id: uuid.UUID):
        return {'version': id.version}

    router.get(PatternMatcher('things/:id'), handler)

    assert router.run(_request(f'/things/{uuid.uuid4()}')).content == {'version': 4}
    assert router.run(_request('/things/not-uuid')).status == HTTPStatus.BAD_REQUEST


def test_type_handler_override_and_remove():
    router = Router()
    router.type_handler(int, lambda value: int(value, 16) if value.startswith('0x') else None)

    def handler(id: int):
        return {'id': id}

    router.get(PatternMatcher('items/:id'), handler)

    assert router.run(_request('/items/0x10')).content == {'id': 16}
    assert router.run(_request('/items/10')).status == HTTPStatus.BAD_REQUEST

    router.type_handler(int, None)
    assert int not in router.type_handlers
    assert router.run(_request('/items/0x10')).status == HTTPStatus.BAD_REQUEST


def test_default_value():
    router = Router()

    def handler(page: int = 1):
        return {'page': page}

    router.get(ExactMatcher('items'), handler)
    router.get(PatternMatcher('items/:page'), handler)

    assert router.run(_request('/items')).content == {'page': 1}
    assert router.run(_request('/items/3')).content == {'page': 3}


def test_optional_value():
    router = Router()

    def handler(page: Optional[int]):
        return {'page': page}

    router.get(ExactMatcher('items'), handler)

    assert router.run(_request('/items')).content == {'page': None}


def test_missing_value():
    router = Router()
    match = MatchedRoute('items', None)

    def handler(page: int):
        return page

    with pytest.raises(InvalidParameterError):
        _bind(router, handler, match)


def test_path():
    router = Router()

    def handler(path: str, untyped_path=None):
        return path

    match = MatchedRoute('a/b', None, {'path': 'ignored'})
    assert _bind(router, handler, match) == {'path': 'a/b'}

    def untyped(path):
        return path

    assert _bind(Router(), untyped, match) == {'path': 'a/b'}


def test_path_converted():
    def handler(path: int):
        return path

    assert _bind(Router(), handler, MatchedRoute('12', None)) == {'path': 12}
    # route parameter named path is used when path is not string
    assert _bind(Router(), handler, MatchedRoute('a/b', None, {'path': '7'})) == {'path': 7}

    with pytest.raises(InvalidParameterError):
        _bind(Router(), handler, MatchedRoute('a/b', None))


def test_request():
    request = _request('/x')

    def handler(request: Request):
        return request

    assert _bind(Router(), handler, MatchedRoute('x', request)) == {'request': request}


def test_request_type_mismatch():
    request = _request('/x')

    def handler(request: str):
        return request

    # not a Request, taken from route parameters
    assert _bind(Router(), handler, MatchedRoute('x', request, {'request': 'param'})) == {'request': 'param'}

    with pytest.raises(InvalidParameterError):
        _bind(Router(), handler, MatchedRoute('x', request))


def test_response():
    response = Response('content')

    def handler(response: Response):
        return response

    assert _bind(Router(), handler, MatchedRoute('x', None), response=response) == {'response': response}

    # outside of modifiers response is not available
    with pytest.raises(InvalidParameterError):
        _bind(Router(), handler, MatchedRoute('x', None))


def test_response_optional():
    def handler(response: Optional[Response] = None):
        return response

    assert _bind(Router(), handler, MatchedRoute('x', None)) == {}


def test_exception():
    error = HTTPError(HTTPStatus.CONFLICT)

    def handler(exception: HTTPError):
        return exception

    assert _bind(Router(), handler, MatchedRoute('x', None), exception=error) == {'exception': error}


def test_untyped_request_response_exception():
    request = _request('/x')
    response = Response('content')
    error = HTTPError(HTTPStatus.CONFLICT)

    def handler(request, response, exception):
        return request, response, exception

    match = MatchedRoute('x', request, {'request': 'param'})
    assert _bind(Router(), handler, match, response=response, exception=error) == {
        'request': request, 'response': response, 'exception': error,
    }


def test_var_parameters_ignored():
    def handler(*args, **kwargs):
        return 'x'

    assert _bind(Router(), handler, MatchedRoute('x', None, {'a': '1'})) == {}


def test_keyword_only_parameter():
    router = Router()

    def handler(*, id: int):
        return {'id': id}

    router.get(PatternMatcher('items/:id'), handler)

    assert router.run(_request('/items/5')).content == {'id': 5}


def test_parameter_names_are_case_sensitive():
    router = Router()

    def handler(Id=None):
        return {'Id': Id}

    router.get(PatternMatcher('items/:id'), handler)

    assert router.run(_request('/items/5')).content == {'Id': None}


def test_callable_object_handler():
    class Handler:
        def __call__(self, id: int):
            return {'id': id}

    router = Router()
    router.get(PatternMatcher('items/:id'), Handler())

    assert router.run(_request('/items/5')).content == {'id': 5}


def _parse_uuid(value):
    try:
        return uuid.UUID(value)
    except ValueError:
        return None
