import json
import socket
import logging
import dataclasses
from base64 import b64encode
from collections.abc import Mapping, MutableMapping
from urllib.parse import quote, urlencode

import httplib2

from .config import defaults, from_environ

__version__ = '0.1.0'

__all__ = ['Client', 'Database', 'DesignDocument', 'Document', 'RowSet',
           'SearchResult', 'FindResult', 'Index', 'Query', 'connect',
           'createdb', 'deletedb', 'CloudantException', 'CloudantAuthError',
           'CloudantConnectionError', 'CloudantConflict', 'CloudantNotFound',
           'CloudantValidationError', 'CloudantTimeout']

log = logging.getLogger('cloudantquery')

JSON_HEADERS = {"content-type": "application/json",
                "accept": "application/json"}

# view parameters CouchDB expects as JSON even when they are strings
JSON_VIEW_PARAMS = ('key', 'keys', 'startkey', 'endkey',
                    'start_key', 'end_key')

DESIGN_PREFIX = '_design/'


class CloudantException(Exception):
    """Base class for everything the client raises.

    ``status`` is the HTTP status code when the service answered, and
    ``error``/``reason`` are copied from its JSON error body.
    """

    def __init__(self, message, status=None, error=None, reason=None):
        super(CloudantException, self).__init__(message)
        self.status = status
        self.error = error
        self.reason = reason


class CloudantAuthError(CloudantException):
    """Credentials are malformed or were refused (401/403)."""


class CloudantConnectionError(CloudantException, ConnectionError):
    """The service could not be reached."""


class CloudantConflict(CloudantException):
    """Document update conflict or duplicate database (409/412)."""


class CloudantNotFound(CloudantException):
    """Missing database, document, view or search index (404)."""


class CloudantValidationError(CloudantException, ValueError):
    """Malformed input, rejected locally or by the service (400/415)."""


class CloudantTimeout(CloudantException, TimeoutError):
    """The request did not complete within the client's timeout."""


errors = {
    400: CloudantValidationError,
    401: CloudantAuthError,
    403: CloudantAuthError,
    404: CloudantNotFound,
    409: CloudantConflict,
    412: CloudantConflict,
    415: CloudantValidationError,
}


class HttpResponse(object):
    pass


class Httplib2Response(HttpResponse):
    def __init__(self, response, content, method=None, uri=None):
        self.body = content
        self._response = response
        self.status = response.status
        self.headers = response
        self.method = method
        self.uri = uri

    @property
    def ok(self):
        return 200 <= self.status < 300

    def json(self):
        if not self.body:
            return None
        body = self.body
        if isinstance(body, bytes):
            body = body.decode('utf-8')
        return json.loads(body)

    def raise_for_status(self):
        if self.ok:
            return self
        try:
            result = self.json() or {}
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}
        error, reason = result.get('error'), result.get('reason')
        message = '%s %s: %s' % (self.status, self.method, self.uri)
        if error:
            message += ' (%s: %s)' % (error, reason)
        cls = errors.get(self.status, CloudantException)
        raise cls(message, status=self.status, error=error, reason=reason)


class HttpClient(object):
    pass


def httplib2MethodWrapper(method):
    def m(self, path='', **kwargs):
        headers = dict(JSON_HEADERS)
        headers.update(self.auth_headers)
        headers.update(kwargs.pop('headers', None) or {})
        resp, content = self.request(path, method, headers, **kwargs)
        response = Httplib2Response(resp, content, method, self.uri + path)
        log.debug("%s /%s -> %s", method, self.path + path, response.status)
        if method != 'HEAD':
            response.raise_for_status()
        return response
    return m


def basic_auth_header(username, password):
    token = '%s:%s' % (username, password)
    return 'Basic ' + b64encode(token.encode('utf-8')).decode('ascii')


class Httplib2Client(HttpClient):
    """JSON-over-HTTP transport bound to one base uri.

    Calling an instance with path segments returns a client for the
    sub-resource that shares the same ``httplib2.Http`` and credentials.
    """

    def __init__(self, uri, credentials=None, cache=None, timeout=None,
                 http_override=None):
        if not uri.endswith('/'):
            uri = uri + '/'
        self.uri = uri
        self.path = ''
        self.auth_headers = {}
        if credentials is not None:
            self.auth_headers['authorization'] = basic_auth_header(*credentials)

        if http_override is None:
            if cache is None:
                cache = defaults['cache']
            if timeout is None:
                timeout = defaults['timeout']
            self.http = httplib2.Http(
                cache,
                timeout=timeout,
                disable_ssl_certificate_validation=defaults[
                    'disable_ssl_certificate_validation'])
        else:
            self.http = http_override

    def __call__(self, *path):
        sub = '/'.join(path)
        if not sub.endswith('/'):
            sub += '/'
        child = type(self).__new__(type(self))
        child.uri = self.uri + sub
        child.path = self.path + sub
        child.auth_headers = self.auth_headers
        child.http = self.http
        return child

    def request(self, path, method, headers, body=None):
        uri = self.uri + path
        try:
            return self.http.request(uri,
                                     method,
                                     headers=headers,
                                     body=body,
                                     redirections=0)
        except socket.timeout as e:
            raise CloudantTimeout('%s %s: timed out' % (method, uri)) from e
        except httplib2.ServerNotFoundError as e:
            raise CloudantConnectionError('%s %s: %s' % (method, uri, e)) from e
        except OSError as e:
            raise CloudantConnectionError('%s %s: %s' % (method, uri, e)) from e
        except httplib2.HttpLib2Error as e:
            raise CloudantException('%s %s: %s' % (method, uri, e)) from e

    get = httplib2MethodWrapper("GET")
    put = httplib2MethodWrapper("PUT")
    post = httplib2MethodWrapper("POST")
    delete = httplib2MethodWrapper("DELETE")
    head = httplib2MethodWrapper("HEAD")


def dumps(obj):
    try:
        return json.dumps(obj)
    except (TypeError, ValueError) as e:
        raise CloudantValidationError('not JSON serializable: %s' % e) from e


def quote_id(id_):
    """Quote a document id for use as a path segment. Design document
    ids keep their ``_design/`` prefix unescaped."""
    if id_.startswith(DESIGN_PREFIX):
        return DESIGN_PREFIX + quote(id_[len(DESIGN_PREFIX):], safe='')
    return quote(id_, safe='')


def query_string(params, json_params=()):
    qs = {}
    for k, v in params.items():
        if v is None and k not in json_params:
            continue
        if k in json_params or not isinstance(v, str):
            qs[k] = json.dumps(v)
        else:
            qs[k] = v
    if not qs:
        return ''
    return '?' + urlencode(qs)


def serialize(value):
    """Turn a document value into a plain dict.

    Mappings are copied, dataclass instances go through
    ``dataclasses.asdict`` and any other object contributes its public
    attributes (plus ``_id``/``_rev`` when present).
    """
    if isinstance(value, Mapping):
        return dict(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if hasattr(value, '__dict__') and not isinstance(value, type):
        return dict((k, v) for k, v in vars(value).items()
                    if not k.startswith('_') or k in ('_id', '_rev'))
    raise CloudantValidationError(
        'cannot store %s as a document' % type(value).__name__)


def deserialize(data, into=None):
    """Load a decoded JSON document into the shape the caller asked for.

    ``into`` may be None (a `Document`), a class to instantiate or an
    instance to fill in place. Fields the target does not declare are
    ignored for dataclasses, and declared fields the document lacks are
    left at their default, or None when they have none.
    """
    if into is None:
        return Document(data)
    if isinstance(into, type):
        if issubclass(into, Mapping):
            return into(data)
        if dataclasses.is_dataclass(into):
            kwargs = {}
            for f in dataclasses.fields(into):
                if not f.init:
                    continue
                if f.name in data:
                    kwargs[f.name] = data[f.name]
                elif (f.default is dataclasses.MISSING and
                      f.default_factory is dataclasses.MISSING):
                    kwargs[f.name] = None
            return into(**kwargs)
        try:
            into = into()
        except TypeError as e:
            raise CloudantValidationError(
                'cannot load a document into %s: %s' % (into.__name__, e)) from e
    if isinstance(into, MutableMapping):
        into.update(data)
    elif dataclasses.is_dataclass(into):
        for f in dataclasses.fields(into):
            if f.name in data:
                setattr(into, f.name, data[f.name])
    elif hasattr(into, '__dict__'):
        for k, v in data.items():
            setattr(into, k, v)
    else:
        raise CloudantValidationError(
            'cannot load a document into %s' % type(into).__name__)
    return into


class Document(dict):
    """A dict whose keys are also readable as attributes."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name)

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(name)


class RowSet(object):
    """Rows of a view result.

    Iterating yields row values, wrapped as `Document` when they are
    documents. Indexing with an int returns one value; indexing with
    anything else returns the sub-RowSet of rows with that key.
    """

    def __init__(self, rows, offset=None, total_rows=None):
        self.__rows = rows
        self.offset = offset
        self.total_rows = total_rows

    def raw_rows(self):
        return self.__rows

    def keys(self):
        return [x['key'] for x in self.__rows]

    def values(self):
        return list(self)

    def ids(self):
        return [x['id'] for x in self.__rows]

    def items(self, key='key', value='value'):
        if value == 'value':
            values = self.values()
        else:
            values = [x[value] for x in self.__rows]

        if key == 'value':
            keys = self.values()
        else:
            keys = [x[key] for x in self.__rows]

        return list(zip(keys, values))

    def _value(self, row):
        value = row.get('value')
        if type(value) is dict and '_id' in value:
            value = row['value'] = Document(value)
        return value

    def __iter__(self):
        for row in self.__rows:
            yield self._value(row)

    def __contains__(self, obj):
        if isinstance(obj, str):
            return obj in (x.get('id') for x in self.__rows)
        return obj in (x.get('value') for x in self.__rows)

    def __getitem__(self, i):
        if type(i) is int:
            return self._value(self.__rows[i])
        return RowSet([r for r in self.__rows if r['key'] == i])

    def get(self, i, default=None):
        try:
            return self[i]
        except IndexError:
            return default

    def __len__(self):
        return len(self.__rows)

    def __repr__(self):
        return '<RowSet: %d rows>' % len(self)


class FindResult(list):
    """Documents matched by a Mango query. ``bookmark`` resumes after the
    last one; pass it back in a `Query` to fetch the next page."""

    def __init__(self, docs, bookmark=None, warning=None):
        super(FindResult, self).__init__(docs)
        self.bookmark = bookmark
        self.warning = warning


class SearchResult(object):
    """One page of a full-text search: ``rows``, ``total_rows`` (all
    matches, not just this page) and the ``bookmark`` of the next page."""

    def __init__(self, rows, total_rows, bookmark=None):
        self.rows = rows
        self.total_rows = total_rows
        self.bookmark = bookmark

    def __iter__(self):
        return iter(self.rows)

    def __len__(self):
        return len(self.rows)

    def __repr__(self):
        return '<SearchResult: %d of %d rows>' % (len(self), self.total_rows)


@dataclasses.dataclass
class Index(object):
    """A Mango index definition."""
    fields: list
    name: str = None
    ddoc: str = None
    type: str = 'json'
    partial_filter_selector: dict = None

    def to_json(self):
        body = {'index': {'fields': list(self.fields)}, 'type': self.type}
        if self.partial_filter_selector is not None:
            body['index']['partial_filter_selector'] = \
                self.partial_filter_selector
        if self.name is not None:
            body['name'] = self.name
        if self.ddoc is not None:
            body['ddoc'] = self.ddoc
        return body


@dataclasses.dataclass
class Query(object):
    """A Mango ``_find`` request."""
    selector: dict
    fields: list = None
    sort: list = None
    limit: int = None
    skip: int = None
    bookmark: str = None
    use_index: object = None

    def to_json(self):
        body = {'selector': self.selector}
        for name in ('fields', 'sort', 'limit', 'skip', 'bookmark',
                     'use_index'):
            value = getattr(self, name)
            if value is not None:
                body[name] = value
        return body


class Client(object):
    """Credentials and base url of one account.

    With an ``apikey`` the key and ``password`` authenticate and the
    username only picks the account host; otherwise the username and
    password do.

    Every `Database` handed out shares the client's single
    ``httplib2.Http``, which is not safe to use from several threads at
    once; give each thread its own client.
    """

    def __init__(self, username, apikey=None, password=None, url=None,
                 timeout=None, cache=None, http=None):
        if not username:
            raise CloudantAuthError('a username is required')
        if not password:
            raise CloudantAuthError('a password is required')
        self.username = username
        self.apikey = apikey
        self.url = (url or defaults['host'] % username).rstrip('/') + '/'
        self.http = Httplib2Client(self.url,
                                   credentials=(apikey or username, password),
                                   cache=cache,
                                   timeout=timeout,
                                   http_override=http)

    @classmethod
    def from_env(cls, environ=None, **kwargs):
        settings = from_environ(environ)
        settings.update(kwargs)
        return cls(settings.pop('username', None), **settings)

    def __repr__(self):
        return '<Client %s>' % self.url

    def is_alive(self):
        """Round trip to the service root with our credentials."""
        self.http.get('')
        return True

    def all_dbs(self):
        return self.http.get('_all_dbs').json()

    def create_db(self, name):
        response = self.http.put(quote(name, safe=''))
        log.info("created database %s", name)
        return response.json()

    def delete_db(self, name):
        response = self.http.delete(quote(name, safe=''))
        log.info("deleted database %s", name)
        return response.json()

    def db_exists(self, name):
        response = self.http.head(quote(name, safe=''))
        if response.status == 404:
            return False
        response.raise_for_status()
        return True

    def db(self, name):
        return Database(self, name)

    database = db


def connect(username, apikey=None, password=None, **kwargs):
    return Client(username, apikey=apikey, password=password, **kwargs)


def createdb(db):
    return db.client.create_db(db.name)


def deletedb(db):
    return db.client.delete_db(db.name)


class Database(object):
    def __init__(self, client, name):
        self.client = client
        self.name = name
        self.http = client.http(quote(name, safe=''))

    def __repr__(self):
        return '<Database %s>' % self.name

    def exists(self):
        return self.client.db_exists(self.name)

    def info(self):
        return self.http.get('').json()

    def create_document(self, value):
        """Store a new document, returning its ``(id, rev)``. The server
        picks the id unless the value carries an ``_id``."""
        body = dumps(serialize(value))
        result = self.http.post('', body=body).json()
        return result['id'], result['rev']

    def get_document(self, id_, into=None, **options):
        """Fetch a document by id.

        Extra keyword arguments become query parameters (``rev``,
        ``revs_info``, ``conflicts`` ...). See `deserialize` for ``into``.
        """
        path = quote_id(id_) + query_string(options)
        return deserialize(self.http.get(path).json(), into)

    def update_document(self, id_, rev, value):
        """Replace a document, returning the new revision. A stale
        ``rev`` raises CloudantConflict."""
        doc = serialize(value)
        doc['_id'] = id_
        doc['_rev'] = rev
        result = self.http.put(quote_id(id_), body=dumps(doc)).json()
        return result['rev']

    def delete_document(self, id_, rev):
        path = quote_id(id_) + query_string({'rev': rev})
        return self.http.delete(path).json()['rev']

    def set_index(self, index):
        if isinstance(index, Index):
            index = index.to_json()
        result = self.http.post('_index', body=dumps(index)).json()
        log.debug("index %s %s", result.get('name'), result.get('result'))
        return result

    def get_indexes(self):
        return self.http.get('_index').json()['indexes']

    def delete_index(self, ddoc, name, type='json'):
        if ddoc.startswith(DESIGN_PREFIX):
            ddoc = ddoc[len(DESIGN_PREFIX):]
        path = '/'.join(['_index', quote(ddoc, safe=''), type,
                         quote(name, safe='')])
        return self.http.delete(path).json()

    def search_document(self, query):
        """Run a Mango query and return the matching documents as a
        `FindResult`. A plain dict is taken as the selector unless it
        already has one.

        The service caps a page at 25 documents unless the query sets a
        ``limit``; the result's ``bookmark`` fetches the next page.
        """
        if isinstance(query, Query):
            body = query.to_json()
        elif 'selector' in query:
            body = dict(query)
        else:
            body = {'selector': dict(query)}
        result = self.http.post('_find', body=dumps(body)).json()
        if result.get('warning'):
            log.debug("_find: %s", result['warning'])
        return FindResult([Document(d) for d in result.get('docs', [])],
                          result.get('bookmark'),
                          result.get('warning'))

    def create_design_doc(self, name, definition):
        """Store or replace ``_design/<name>``. ``definition`` is the
        design document as JSON text or a dict."""
        if isinstance(definition, (str, bytes)):
            try:
                doc = json.loads(definition)
            except ValueError as e:
                raise CloudantValidationError(
                    'bad design document %s: %s' % (name, e)) from e
        else:
            doc = dict(definition)
        if not isinstance(doc, dict):
            raise CloudantValidationError(
                'design document %s is not an object' % name)
        doc['_id'] = DESIGN_PREFIX + name
        doc.pop('_rev', None)
        try:
            doc['_rev'] = self.http.get(quote_id(doc['_id'])).json()['_rev']
        except CloudantNotFound:
            pass
        result = self.http.put(quote_id(doc['_id']), body=dumps(doc)).json()
        return result['rev']

    def design(self, name):
        return DesignDocument(name)


class DesignDocument(object):
    """Addresses ``_design/<name>`` in whichever database it is handed."""

    def __init__(self, name):
        if name.startswith(DESIGN_PREFIX):
            name = name[len(DESIGN_PREFIX):]
        self.name = name
        self.id = DESIGN_PREFIX + name
        self.doc = None

    def __repr__(self):
        return '<DesignDocument %s>' % self.name

    def _path(self, *parts):
        return '/'.join([quote_id(self.id)] +
                        [quote(p, safe='') for p in parts])

    def get(self, db):
        self.doc = Document(db.http.get(self._path()).json())
        return self.doc

    def view(self, db, view_name, keys=None, **params):
        path = self._path('_view', view_name) + \
            query_string(params, JSON_VIEW_PARAMS)
        if keys is None:
            response = db.http.get(path)
        else:
            response = db.http.post(path, body=dumps({'keys': keys}))
        result = response.json()
        return RowSet(result['rows'],
                      offset=result.get('offset'),
                      total_rows=result.get('total_rows'))

    def search(self, db, index_name, query, bookmark='', limit=None,
               **params):
        params['q'] = query
        params['limit'] = limit
        if bookmark:
            params['bookmark'] = bookmark
        path = self._path('_search', index_name) + query_string(params)
        result = db.http.get(path).json()
        return SearchResult([Document(r) for r in result.get('rows', [])],
                            result.get('total_rows', 0),
                            result.get('bookmark'))
