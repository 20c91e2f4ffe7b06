import dataclasses

import pytest

from cloudantquery import *
from fakecloudant import FakeCloudant


@dataclasses.dataclass
class Data:
    id: str
    name: str


class Record(object):
    def __init__(self):
        self.id = None
        self.name = None


def setup_module(module):
    http = FakeCloudant()
    client = Client('tester', password='secret',
                    url='http://tester.cloudant.test', http=http)
    db = client.db('cloudantquery_unittest')
    createdb(db)
    module.http = http
    module.db = db


def teardown_module(module):
    deletedb(module.db)


def test_document_crud_map():
    test_data = {'name': 'test', 'id': '123'}
    id_, rev = db.create_document(test_data)
    assert rev.startswith('1-')

    result = db.get_document(id_)
    assert type(result) is Document
    assert result['name'] == 'test'
    assert result.name == 'test'

    test_data['id'] = 'updated123'
    new_rev = db.update_document(id_, rev, test_data)
    assert new_rev != rev
    assert db.get_document(id_)['id'] == 'updated123'

    db.delete_document(id_, new_rev)
    with pytest.raises(CloudantNotFound):
        db.get_document(id_)


def test_document_crud_dataclass():
    test_data = Data(id='1', name='test2')
    id_, rev = db.create_document(test_data)

    result = db.get_document(id_, into=Data)
    assert result == Data(id='1', name='test2')

    test_data.id = 'updated123'
    new_rev = db.update_document(id_, rev, test_data)
    assert db.get_document(id_, into=Data).id == 'updated123'

    db.delete_document(id_, new_rev)
    with pytest.raises(CloudantNotFound):
        db.get_document(id_, into=Data)


def test_get_into_instance():
    id_, _ = db.create_document({'_id': 'into-me', 'id': '7', 'name': 'seven'})
    target = {}
    assert db.get_document(id_, into=target) is target
    assert target['_id'] == 'into-me'

    record = db.get_document(id_, into=Record)
    assert (record.id, record.name) == ('7', 'seven')
    assert record._rev.startswith('1-')


def test_plain_object_document():
    record = Record()
    record.id, record.name = '8', 'eight'
    record._scratch = 'not stored'
    id_, _ = db.create_document(record)
    stored = db.get_document(id_)
    assert stored['name'] == 'eight'
    assert '_scratch' not in stored


def test_get_options():
    id_, rev = db.create_document({'name': 'opts'})
    db.get_document(id_, rev=rev, revs_info=True)
    uri = http.requests[-1][1]
    assert 'rev=' + rev in uri
    assert 'revs_info=true' in uri


def test_stale_revision():
    id_, rev = db.create_document({'name': 'stale'})
    db.update_document(id_, rev, {'name': 'fresh'})
    with pytest.raises(CloudantConflict) as excinfo:
        db.update_document(id_, rev, {'name': 'lost'})
    assert excinfo.value.status == 409
    with pytest.raises(CloudantConflict):
        db.delete_document(id_, rev)
    assert db.get_document(id_)['name'] == 'fresh'


def test_duplicate_id():
    db.create_document({'_id': 'taken'})
    with pytest.raises(CloudantConflict):
        db.create_document({'_id': 'taken'})


def test_id_with_slash():
    id_, _ = db.create_document({'_id': 'a/b', 'name': 'slashed'})
    assert id_ == 'a/b'
    assert db.get_document('a/b')['name'] == 'slashed'
    assert '/a%2Fb' in http.requests[-1][1]


def test_invalid_values():
    with pytest.raises(CloudantValidationError):
        db.create_document(42)
    with pytest.raises(ValueError):
        db.create_document({'tags': {'a', 'b'}})


def test_set_index():
    result = db.set_index(Index(fields=['id']))
    assert result['result'] == 'created'
    again = db.set_index({'index': {'fields': ['id']}, 'type': 'json'})
    assert again['result'] == 'exists'
    names = [i['name'] for i in db.get_indexes()]
    assert result['name'] in names


def test_delete_index():
    result = db.set_index(Index(fields=['name'], name='by-name',
                                ddoc='names'))
    assert result['id'] == '_design/names'
    db.delete_index(result['id'], 'by-name')
    assert 'by-name' not in [i['name'] for i in db.get_indexes()]
    with pytest.raises(CloudantNotFound):
        db.delete_index('names', 'by-name')


def test_search_document():
    for data in (Data('1', 'test3-1'), Data('11', 'test3-2'),
                 Data('111', 'test3-3')):
        db.create_document(data)

    result = db.search_document(Query(selector={'id': '11'}))
    assert len(result) == 1
    assert result[0]['id'] == '11'
    assert result[0].name == 'test3-2'

    assert db.search_document({'id': {'$eq': '111'}})[0]['name'] == 'test3-3'
    assert db.search_document({'selector': {'id': 'nothing'}}) == []


def test_query_body():
    query = Query(selector={'id': '1'}, fields=['name'], limit=5)
    assert query.to_json() == {'selector': {'id': '1'},
                               'fields': ['name'], 'limit': 5}


def test_info():
    info = db.info()
    assert info['db_name'] == 'cloudantquery_unittest'
    assert info['doc_count'] > 0


@dataclasses.dataclass
class Tagged:
    name: str
    tags: list = dataclasses.field(default_factory=list)
    owner: str = 'nobody'


def test_get_into_dataclass_missing_fields():
    id_, _ = db.create_document({'name': 'only-name'})
    assert db.get_document(id_, into=Data) == Data(id=None, name='only-name')
    tagged = db.get_document(id_, into=Tagged)
    assert tagged == Tagged('only-name', [], 'nobody')


def test_search_document_pages():
    for n in (1, 2, 3):
        db.create_document({'_id': 'page-%d' % n, 'kind': 'page'})

    first = db.search_document(Query(selector={'kind': 'page'}, limit=2))
    assert [d._id for d in first] == ['page-1', 'page-2']
    assert first.bookmark == 'page-2'
    assert first.warning

    rest = db.search_document(Query(selector={'kind': 'page'},
                                    bookmark=first.bookmark))
    assert isinstance(rest, FindResult)
    assert [d._id for d in rest] == ['page-3']
