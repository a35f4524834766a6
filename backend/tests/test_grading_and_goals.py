import io
from datetime import datetime, timezone

from docx import Document


def make_docx_bytes(q_and_answers):
    doc = Document()
    for q, answers in q_and_answers:
        doc.add_paragraph(q)
        for a in answers:
            doc.add_paragraph(a)
        doc.add_paragraph('')
    bio = io.BytesIO()
    doc.save(bio)
    return bio.getvalue()


def _import(client, headers, topic, name, payload, **data):
    files = {'file': (name, payload)}
    return client.post('/questions/import', files=files, data={'topic': topic, **data}, headers=headers)


def test_docx_import_and_perfect_score(client, make_user, topic):
    _, headers = make_user()
    qlist = [("What is the nominal voltage of a residential service?", ["120/240 V", "347/600 V"]),
             ("Which conductor colour identifies ground?", ["Green", "Red"])]
    r = _import(client, headers, topic, 'questions.docx', make_docx_bytes(qlist))
    assert r.status_code == 200
    assert r.json()['created'] == 2

    listed = client.get('/questions', params={'topic': topic}).json()
    assert [q['question_text'] for q in listed] == [q for q, _ in qlist]
    answers = [{'question_id': q['id'], 'given_answer': q['answers'][0]['answer_text']} for q in listed]
    g = client.post('/quiz/grade', json={'topic': topic, 'answers': answers}, headers=headers)
    assert g.status_code == 200
    gj = g.json()
    assert gj['score'] == gj['total'] == 2
    assert gj['percentage'] == 100.0


def test_import_dedupes_and_dry_run(client, make_user, topic):
    _, headers = make_user()
    payload = b'Ohm\'s law?\nV = IR\nV = I/R\n'
    dry = _import(client, headers, topic, 'q.txt', payload, dry_run='true').json()
    assert dry['created'] == 0 and dry['valid'] == 1
    assert client.get('/questions', params={'topic': topic}).json() == []
    first = _import(client, headers, topic, 'q.txt', payload).json()
    second = _import(client, headers, topic, 'q.txt', payload).json()
    assert first['created'] == 1
    assert second['created'] == 0 and second['skipped'] == 1


def test_import_reports_invalid_items(client, make_user, topic):
    _, headers = make_user()
    payload = b'[{"question_text": "", "possible_answers": []}, {"question_text": "Q", "possible_answers": [{"answer_text": "A"}]}]'
    res = _import(client, headers, topic, 'q.json', payload).json()
    assert res['created'] == 1
    assert res['errors'][0]['index'] == 0


def test_import_rejects_unsupported_file(client, make_user, topic):
    _, headers = make_user()
    r = _import(client, headers, topic, 'q.exe', b'MZ')
    assert r.status_code == 400


def test_grade_is_case_insensitive_and_checks_answer_ids(client, make_user, topic):
    _, headers = make_user()
    _import(client, headers, topic, 'q.txt', b'Symbol for current?\n*I\nV\n\nSymbol for voltage?\nE\n*V\n')
    q1, q2 = client.get('/questions', params={'topic': topic}).json()
    g = client.post('/quiz/grade', json={'answers': [
        {'question_id': q1['id'], 'given_answer': '  i '},
        {'question_id': q2['id'], 'answer_id': q2['answers'][0]['id']},
    ]}, headers=headers).json()
    assert g['score'] == 1
    assert g['items'][1]['correct_answers'] == ['V']

    foreign = client.post('/quiz/grade', json={'answers': [
        {'question_id': q1['id'], 'answer_id': q2['answers'][0]['id']},
    ]}, headers=headers)
    assert foreign.status_code == 400
    missing = client.post('/quiz/grade', json={'answers': [{'question_id': 999999, 'given_answer': 'x'}]}, headers=headers)
    assert missing.status_code == 400


def test_quiz_and_goals_flow(client, make_user, topic):
    _, headers = make_user()
    _import(client, headers, topic, 'q.txt', b'What is A?\nAnswer1\nAnswer2\n\nWhat is B?\nAnswer3\nAnswer4\n')
    r = client.get('/quiz', params={'topic': topic, 'limit': 5}, headers=headers)
    assert r.status_code == 200
    data = r.json()
    assert len(data) == 2
    assert all('is_correct' not in a for q in data for a in q['answers'])
    answers = [{'question_id': q['id'], 'given_answer': q['answers'][0]['answer_text'], 'answer_id': q['answers'][0]['id']} for q in data]
    assert client.post('/quiz/grade', json={'answers': answers}, headers=headers).status_code == 200

    week_start = datetime.now(timezone.utc).date().isoformat()
    s = client.post('/goals/set', params={'week_start': week_start, 'goal_type': 'quizzes', 'goal_value': 5}, headers=headers)
    assert s.status_code == 200
    s2 = client.post('/goals/set', params={'week_start': week_start, 'goal_type': 'quizzes', 'goal_value': 3}, headers=headers)
    assert s2.json()['goal_id'] == s.json()['goal_id']
    bad = client.post('/goals/set', params={'week_start': week_start, 'goal_type': 'quizzes', 'goal_value': -1}, headers=headers)
    assert bad.status_code == 400

    p = client.get('/goals/progress', params={'week_start': week_start}, headers=headers).json()
    assert p['quizzes_completed'] == 1
    assert p['questions_completed'] == 2
    assert p['practice_attempts'] == 0
    assert p['goals'] == {'quizzes': 3}
