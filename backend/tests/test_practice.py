import asyncio
import threading

import pytest
from sqlmodel import select

from cofq import models, repositories
from cofq.llm import LLMProviderError, StubLLMProvider
from cofq.retrieval import HashingEmbedder
from cofq.services import PassageService, PracticeService

AMPACITY = "Conductor ampacity depends on the insulation temperature rating and the ambient temperature."
BONDING = "Bonding jumpers connect non-current-carrying metal parts to the grounding electrode."


def _seed_passages(client, headers, topic):
    ids = []
    for source, text in (("ampacity.md", AMPACITY), ("bonding.md", BONDING)):
        r = client.post('/passages', json={'topic': topic, 'source': source, 'text': text}, headers=headers)
        assert r.status_code == 200
        ids.extend(r.json()['passage_ids'])
    return ids


def test_practice_answers_with_citations_and_history(client, make_user, use_provider, topic):
    user_id, headers = make_user()
    ampacity_id, _ = _seed_passages(client, headers, topic)
    stub = use_provider(StubLLMProvider())

    r = client.post('/practice', json={'topic': topic, 'prompt': 'What does conductor ampacity depend on?', 'top_k': 1}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body['answer'] == 'Based on the study material, see [1].'
    assert body['provider'] == 'stub'
    assert [c['passage_id'] for c in body['citations']] == [ampacity_id]
    assert body['citations'][0]['source'] == 'ampacity.md'
    # the retrieved passage reached the provider as numbered context
    user_message = stub.calls[0][-1]['content']
    assert f'[1] (ampacity.md) {AMPACITY}' in user_message
    assert 'Bonding' not in user_message

    client.post('/practice', json={'topic': topic, 'prompt': 'What do bonding jumpers connect?', 'user_id': user_id}, headers=headers)
    history = client.get('/practice/history', params={'topic': topic}, headers=headers).json()
    assert [h['prompt'] for h in history] == ['What do bonding jumpers connect?', 'What does conductor ampacity depend on?']
    assert history[1]['attempt_id'] == body['attempt_id']
    assert history[1]['citations'][0]['passage_id'] == ampacity_id


def test_practice_rejects_foreign_user_id(client, make_user, topic):
    user_id, headers = make_user()
    r = client.post('/practice', json={'topic': topic, 'prompt': 'Q?', 'user_id': user_id + 1000}, headers=headers)
    assert r.status_code == 403


def test_practice_requires_auth(client, topic):
    r = client.post('/practice', json={'topic': topic, 'prompt': 'Q?'})
    assert r.status_code in (401, 403)


def test_practice_validation(client, make_user, topic):
    _, headers = make_user()
    assert client.post('/practice', json={'topic': topic, 'prompt': '   '}, headers=headers).status_code == 400
    assert client.post('/practice', json={'topic': topic, 'prompt': 'Q?', 'top_k': 500}, headers=headers).status_code == 400
    assert client.post('/practice', json={'topic': topic, 'prompt': 'Q?', 'top_k': 0}, headers=headers).status_code == 422
    assert client.post('/practice', json={'prompt': 'Q?'}, headers=headers).status_code == 422


def test_practice_provider_failure_persists_nothing(client, make_user, use_provider, topic):
    _, headers = make_user()
    use_provider(StubLLMProvider(error=LLMProviderError("provider returned 503: overloaded")))
    r = client.post('/practice', json={'topic': topic, 'prompt': 'Why derate conductors?'}, headers=headers)
    assert r.status_code == 502
    assert 'overloaded' in r.json()['detail']
    assert client.get('/practice/history', headers=headers).json() == []


def test_practice_rate_limit(client, make_user, monkeypatch, topic):
    _, headers = make_user()
    monkeypatch.setenv("PRACTICE_RATE_LIMIT_PER_MIN", "1")
    payload = {'topic': topic, 'prompt': 'Q?'}
    assert client.post('/practice', json=payload, headers=headers).status_code == 200
    second = client.post('/practice', json=payload, headers=headers)
    assert second.status_code == 429
    assert 'Retry-After' in second.headers


def _user(session):
    user = models.User(username='svc', password_hash='x')
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def test_service_without_passages_sends_empty_context(session):
    user = _user(session)
    stub = StubLLMProvider()
    svc = PracticeService(session, stub, embedder=HashingEmbedder())
    res = asyncio.run(svc.answer(user.id, ' Motors ', ' What is a service factor? '))
    assert res['citations'] == []
    assert res['answer'] == 'No study material matched; answer from general knowledge.'
    assert '(no study material available)' in stub.calls[0][-1]['content']
    attempt = session.get(models.PracticeAttempt, res['attempt_id'])
    assert attempt.topic == 'Motors'
    assert attempt.prompt == 'What is a service factor?'


def test_service_cites_all_passages_when_answer_has_no_markers(session):
    user = _user(session)
    embedder = HashingEmbedder()
    passages = PassageService(session, embedder=embedder)
    asyncio.run(passages.ingest_text('Code', 'a.md', AMPACITY))
    asyncio.run(passages.ingest_text('Code', 'b.md', 'Ampacity tables list conductor ampacity by insulation temperature.'))
    svc = PracticeService(session, StubLLMProvider(reply='Temperature ratings matter.'), embedder=embedder)
    res = asyncio.run(svc.answer(user.id, 'Code', 'conductor ampacity insulation temperature', top_k=2))
    assert len(res['citations']) == 2
    scores = [c['score'] for c in res['citations']]
    assert scores == sorted(scores, reverse=True)


def test_service_ignores_out_of_range_markers(session):
    user = _user(session)
    embedder = HashingEmbedder()
    asyncio.run(PassageService(session, embedder=embedder).ingest_text('Code', 'a.md', AMPACITY))
    svc = PracticeService(session, StubLLMProvider(reply='See [7].'), embedder=embedder)
    res = asyncio.run(svc.answer(user.id, 'Code', 'conductor ampacity temperature rating'))
    # [7] does not name a retrieved passage, so every retrieved passage is cited
    assert len(res['citations']) == 1


def test_search_falls_back_to_all_topics(session):
    embedder = HashingEmbedder()
    svc = PassageService(session, embedder=embedder)
    asyncio.run(svc.ingest_text('Grounding', 'g.md', BONDING))
    hits = asyncio.run(svc.search('bonding jumpers grounding electrode', topic='Unknown topic', k=3))
    assert [h.source for h in hits] == ['g.md']


def test_ingest_skips_existing_chunks(session):
    svc = PassageService(session, embedder=HashingEmbedder())
    first = asyncio.run(svc.ingest_text('Code', 'a.md', f"{AMPACITY}\n\n{BONDING}", max_chars=120, overlap=10))
    second = asyncio.run(svc.ingest_text('Code', 'a.md', f"{AMPACITY}\n\n{BONDING}", max_chars=120, overlap=10))
    assert first['created'] == 2
    assert second == {'created': 0, 'skipped': 2, 'passage_ids': []}


def test_ingest_stores_repeated_chunk_once(session):
    svc = PassageService(session, embedder=HashingEmbedder())
    res = asyncio.run(svc.ingest_text('Code', 'dup.md', 'same text here\n\nsame text here', max_chars=16, overlap=2))
    assert res['created'] == 1
    assert res['skipped'] == 1
    assert len(session.exec(select(models.Passage).where(models.Passage.source == 'dup.md')).all()) == 1


class _ShortEmbedder(HashingEmbedder):
    async def embed(self, texts):
        return (await super().embed(texts))[:1]


def test_ingest_rejects_embedding_count_mismatch(session):
    svc = PassageService(session, embedder=_ShortEmbedder())
    with pytest.raises(LLMProviderError, match="count mismatch"):
        asyncio.run(svc.ingest_text('Code', 'short.md', f"{AMPACITY}\n\n{BONDING}", max_chars=120, overlap=10))
    assert session.exec(select(models.Passage).where(models.Passage.source == 'short.md')).all() == []


def test_practice_database_work_runs_off_the_event_loop(session, monkeypatch):
    user = models.User(username='threads', password_hash='x')
    session.add(user)
    session.commit()
    asyncio.run(PassageService(session, embedder=HashingEmbedder()).ingest_text('Code', 'a.md', AMPACITY))
    loop_thread = threading.get_ident()
    seen = []

    def recording(method):
        def wrapper(self, *args, **kwargs):
            seen.append(threading.get_ident())
            return method(self, *args, **kwargs)
        return wrapper

    monkeypatch.setattr(repositories.PassageRepository, 'list_by_topic', recording(repositories.PassageRepository.list_by_topic))
    monkeypatch.setattr(repositories.AttemptRepository, 'create', recording(repositories.AttemptRepository.create))
    svc = PracticeService(session, StubLLMProvider(), embedder=HashingEmbedder())
    asyncio.run(svc.answer(user.id, 'Code', 'conductor ampacity'))
    assert len(seen) == 2
    assert loop_thread not in seen
