import io

from docx import Document

from cofq.config import settings


def _docx_bytes(paragraphs):
    doc = Document()
    for p in paragraphs:
        doc.add_paragraph(p)
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def test_upload_passages_from_docx(client, make_user, topic):
    _, headers = make_user()
    payload = _docx_bytes(['Service conductors enter through a weatherhead.', '', 'Drip loops keep water out of the mast.'])
    r = client.post('/passages/upload', files={'file': ('service.docx', payload)}, data={'topic': topic}, headers=headers)
    assert r.status_code == 200
    assert r.json()['created'] == 1
    hits = client.get('/passages/search', params={'q': 'weatherhead drip loops', 'topic': topic}).json()
    assert hits[0]['source'] == 'service.docx'


def test_upload_passages_requires_auth(client, topic):
    r = client.post('/passages/upload', files={'file': ('n.txt', b'text')}, data={'topic': topic})
    assert r.status_code in (401, 403)


def test_corrupt_docx_passage_upload_is_rejected(client, make_user, topic):
    _, headers = make_user()
    r = client.post('/passages/upload', files={'file': ('n.docx', b'not a zip')}, data={'topic': topic}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail'] == 'could not read DOCX'


def test_corrupt_pdf_question_import_is_rejected(client, make_user, topic):
    _, headers = make_user()
    r = client.post('/questions/import', files={'file': ('q.pdf', b'not a pdf')}, data={'topic': topic}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail'] == 'could not read PDF'


def test_oversized_upload_is_rejected(client, make_user, monkeypatch, topic):
    _, headers = make_user()
    monkeypatch.setattr(settings, 'MAX_UPLOAD_BYTES', 16)
    for path in ('/passages/upload', '/questions/import'):
        r = client.post(path, files={'file': ('big.txt', b'x' * 17)}, data={'topic': topic}, headers=headers)
        assert r.status_code == 400
        assert r.json()['detail'] == 'file too large'


def test_invalid_filename_and_type_are_rejected(client, make_user, topic):
    _, headers = make_user()
    long_name = 'a' * 201 + '.txt'
    r = client.post('/passages/upload', files={'file': (long_name, b'text')}, data={'topic': topic}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail'] == 'invalid filename'
    r = client.post('/passages/upload', files={'file': ('notes.csv', b'a,b')}, data={'topic': topic}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail'] == 'unsupported file type'
