"""Tests for parameter conversion and error responses using pydantic."""

import datetime
import io
import json
from http import HTTPStatus

from pydantic import BaseModel, TypeAdapter, ValidationError

from wsgimatch import HTTPError, PatternMatcher, Request, Router, WsgiApp

_date_adapter = TypeAdapter(datetime.date)


class ArtistSchema(BaseModel):
    name: str


class AlbumSchema(BaseModel):
    title: str
    release_date: datetime.date
    artist: ArtistSchema


def parse_date(value):
    try:
        return _date_adapter.validate_python(value)
    except ValidationError:
        return None


def validation_error(e):
    return HTTPError(HTTPStatus.UNPROCESSABLE_ENTITY, 'Validation failed', e)


def validation_error_response(exception: HTTPError):
    errors = [{'loc': list(e['loc']), 'type': e['type']} for e in exception.cause.errors()]
    return exception.status, {'_errors': errors}


def json_serializer(data):
    return json.dumps(data, default=str).encode()


def _app():
    router = Router()
    router.type_handler(datetime.date, parse_date)
    router.exception_class_handler(ValidationError, validation_error)
    router.add_error_response_builder('422', validation_error_response)

    @router.get(PatternMatcher('releases/:day'))
    def releases(day: datetime.date):
        return {'day': day.isoformat(), 'weekday': day.isoweekday()}

    @router.post(PatternMatcher('artists/:artist/albums'))
    def create_album(request: Request, artist: str):
        album = AlbumSchema.model_validate(request.json)
        return HTTPStatus.CREATED, {'artist': artist, 'album': album.model_dump()}

    app = WsgiApp(router)
    app.config.json_serializer = json_serializer
    return app


class StartResponse:
    status = None

    def __call__(self, status, headers):
        self.status = status


def test_date_parameter():
    start_response = StartResponse()
    env = {'REQUEST_METHOD': 'GET', 'PATH_INFO': '/releases/2014-08-17'}

    response = b''.join(_app()(env, start_response))
    assert start_response.status == '200 OK'
    assert json.loads(response) == {'day': '2014-08-17', 'weekday': 7}


def test_invalid_date_parameter():
    start_response = StartResponse()
    env = {'REQUEST_METHOD': 'GET', 'PATH_INFO': '/releases/someday'}

    response = b''.join(_app()(env, start_response))
    assert start_response.status == '400 Bad Request'
    assert response == b'Error 400: Invalid URL parameter'


def test_body_validation():
    json_bytes = b'{"title": "Title", "release_date": "2014-08-17", "artist": {"name": "Name"}}'
    env = {
        'REQUEST_METHOD': 'POST',
        'PATH_INFO': '/artists/name/albums',
        'CONTENT_TYPE': 'application/json',
        'wsgi.input': io.BytesIO(json_bytes),
        'CONTENT_LENGTH': f'{len(json_bytes)}',
    }
    start_response = StartResponse()

    response = b''.join(_app()(env, start_response))
    assert start_response.status == '201 Created'
    assert json.loads(response) == {'artist': 'name', 'album': json.loads(json_bytes)}


def test_body_validation_error():
    json_bytes = b'{"title": "Title", "release_date": "invalid date", "artist": {"name": "Name"}}'
    env = {
        'REQUEST_METHOD': 'POST',
        'PATH_INFO': '/artists/name/albums',
        'CONTENT_TYPE': 'application/json',
        'wsgi.input': io.BytesIO(json_bytes),
        'CONTENT_LENGTH': f'{len(json_bytes)}',
    }
    start_response = StartResponse()

    response = b''.join(_app()(env, start_response))
    assert start_response.status.startswith('422 ')
    assert json.loads(response) == {'_errors': [{'loc': ['release_date'], 'type': 'date_from_datetime_parsing'}]}
