import io

import pytest

import ai_service
import app as app_module
from app import db, Progress, QuizSubmission
from quiz_service import QUIZ_SIZE


def assert_valid_quiz(quiz):
    assert len(quiz['questions']) == QUIZ_SIZE
    for question in quiz['questions']:
        assert len(question['options']) == 4
        assert len(set(question['options'])) == 4
        assert question['correct_answer'] in question['options']


def create_text_quiz(client, fake_ai, reply, topic='Geography'):
    fake_ai.replies.append(reply)
    response = client.post('/quiz', json={
        'topic': topic,
        'source_type': 'text',
        'text': 'Paris is the capital of France. 2 + 2 = 4.',
    })
    assert response.status_code == 201, response.get_json()
    return response.get_json()['quiz']


def correct_answers(quiz):
    return [q['correct_answer'] for q in quiz['questions']]


class TestCreateQuiz:

    def test_from_text(self, register, fake_ai, sample_reply):
        client, user = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)

        assert quiz['topic'] == 'Geography'
        assert quiz['source_type'] == 'text'
        assert quiz['created_by'] == user['id']
        assert_valid_quiz(quiz)
        assert 'Paris is the capital of France.' in fake_ai.prompts[0]

    def test_from_file(self, register, fake_ai, sample_reply):
        client, _ = register()
        fake_ai.replies.append(sample_reply)

        response = client.post('/quiz', data={
            'topic': 'Plants',
            'source_type': 'file',
            'file': (io.BytesIO(b'Plants absorb carbon dioxide.'), 'notes.txt'),
        }, content_type='multipart/form-data')

        assert response.status_code == 201, response.get_json()
        assert_valid_quiz(response.get_json()['quiz'])
        assert 'Plants absorb carbon dioxide.' in fake_ai.prompts[0]

    def test_from_file_with_non_ascii_name(self, register, fake_ai, sample_reply):
        client, _ = register()
        fake_ai.replies.append(sample_reply)

        response = client.post('/quiz', data={
            'topic': 'Physics',
            'source_type': 'file',
            'file': (io.BytesIO('Законы Ньютона'.encode('utf-8')), 'заметки.txt', 'application/octet-stream'),
        }, content_type='multipart/form-data')

        assert response.status_code == 201, response.get_json()
        assert 'Законы Ньютона' in fake_ai.prompts[0]

    def test_from_unsupported_file(self, register, fake_ai):
        client, _ = register()

        response = client.post('/quiz', data={
            'topic': 'Plants',
            'source_type': 'file',
            'file': (io.BytesIO(b'binary'), 'notes.exe'),
        }, content_type='multipart/form-data')

        assert response.status_code == 400
        assert fake_ai.prompts == []

    def test_from_flashcards(self, register, fake_ai):
        client, _ = register()
        client.post('/flashcards', json={'topic': 'Biology', 'flashcards': [
            {'question': 'What is mitosis?', 'answer': 'Cell division'},
            {'question': 'Powerhouse of the cell?', 'answer': 'Mitochondria'},
        ]})

        response = client.post('/quiz', json={'topic': 'Biology', 'source_type': 'flashcard'})

        assert response.status_code == 201
        quiz = response.get_json()['quiz']
        assert_valid_quiz(quiz)
        assert set(correct_answers(quiz)) == {'Cell division', 'Mitochondria'}
        assert fake_ai.prompts == []

    def test_from_flashcards_without_cards(self, register):
        client, _ = register()
        response = client.post('/quiz', json={'topic': 'Chemistry', 'source_type': 'flashcard'})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'No flashcards found for this topic.'

    @pytest.mark.parametrize('payload', [
        {'source_type': 'text', 'text': 'notes'},
        {'topic': 'History', 'source_type': 'video'},
        {'topic': 'History', 'source_type': 'text', 'text': '   '},
    ])
    def test_bad_requests(self, register, fake_ai, payload):
        client, _ = register()
        response = client.post('/quiz', json=payload)

        assert response.status_code == 400
        assert fake_ai.prompts == []

    def test_ai_failure(self, register, fake_ai):
        client, _ = register()
        fake_ai.replies.append(ai_service.AIServiceError('API Error: quota exceeded'))

        response = client.post('/quiz', json={'topic': 'History', 'source_type': 'text', 'text': 'notes'})

        assert response.status_code == 500
        assert response.get_json()['error'].startswith('Error creating quiz:')

    def test_unusable_reply_stores_nothing(self, app, register, fake_ai):
        client, _ = register()
        fake_ai.replies.append('I could not think of any questions.')

        response = client.post('/quiz', json={'topic': 'History', 'source_type': 'text', 'text': 'notes'})

        assert response.status_code == 500
        with app.app_context():
            assert db.session.query(app_module.Quiz).count() == 0

    def test_requires_login(self, client):
        response = client.post('/quiz', json={'topic': 'History', 'source_type': 'text', 'text': 'notes'})
        assert response.status_code == 401


class TestQuizDetail:

    def test_owner_sees_answers(self, register, fake_ai, sample_reply):
        client, _ = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)

        detail = client.get(f"/quiz/{quiz['id']}").get_json()['quiz']
        assert correct_answers(detail) == correct_answers(quiz)

    def test_other_users_do_not_see_answers(self, register, fake_ai, sample_reply):
        client, _ = register('alice')
        quiz = create_text_quiz(client, fake_ai, sample_reply)
        other, _ = register('bob')

        detail = other.get(f"/quiz/{quiz['id']}").get_json()['quiz']
        assert len(detail['questions']) == QUIZ_SIZE
        assert all('correct_answer' not in q for q in detail['questions'])

    def test_unknown_quiz(self, register):
        client, _ = register()
        assert client.get('/quiz/999').status_code == 404


class TestSubmitQuiz:

    def test_perfect_score(self, app, register, fake_ai, sample_reply):
        client, user = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)

        response = client.post('/quiz/submit', json={
            'quiz_id': quiz['id'],
            'answers': correct_answers(quiz),
            'time_taken': 95,
        })

        assert response.status_code == 200
        body = response.get_json()
        assert body['score'] == QUIZ_SIZE
        assert body['total_questions'] == QUIZ_SIZE
        assert body['time_taken'] == 95
        assert all(r['is_correct'] for r in body['results'])

        with app.app_context():
            progress = Progress.query.filter_by(user_id=user['id']).one()
            assert progress.quizzes_taken == 1
            assert progress.total_quiz_score == QUIZ_SIZE
            assert progress.total_time_spent == 95

    def test_wrong_answers_score_zero(self, register, fake_ai, sample_reply):
        client, _ = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)

        response = client.post('/quiz/submit', json={
            'quiz_id': quiz['id'],
            'answers': ['nope'] * QUIZ_SIZE,
        })

        body = response.get_json()
        assert body['score'] == 0
        assert body['results'][0]['user_answer'] == 'nope'
        assert body['results'][0]['correct_answer'] == quiz['questions'][0]['correct_answer']

    def test_submit_by_question_ids(self, register, fake_ai, sample_reply):
        client, _ = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)
        picked = quiz['questions'][:2]

        response = client.post('/quiz/submit', json={
            'question_ids': [q['id'] for q in picked],
            'answers': [picked[0]['correct_answer'], 'wrong'],
        })

        body = response.get_json()
        assert response.status_code == 200
        assert body['quiz_id'] is None
        assert body['score'] == 1
        assert body['total_questions'] == 2

    def test_unknown_quiz(self, register):
        client, _ = register()
        response = client.post('/quiz/submit', json={'quiz_id': 999, 'answers': []})

        assert response.status_code == 404
        assert response.get_json()['error'] == 'Quiz not found.'

    def test_unknown_question(self, register):
        client, _ = register()
        response = client.post('/quiz/submit', json={'question_ids': [12345], 'answers': ['x']})

        assert response.status_code == 404
        assert response.get_json()['error'] == 'Question not found.'

    def test_answer_count_mismatch(self, app, register, fake_ai, sample_reply):
        client, _ = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)

        response = client.post('/quiz/submit', json={'quiz_id': quiz['id'], 'answers': ['Paris']})

        assert response.status_code == 400
        with app.app_context():
            assert QuizSubmission.query.count() == 0

    @pytest.mark.parametrize('payload', [
        {'quiz_id': 1, 'answers': 'Paris'},
        {'quiz_id': 1, 'answers': [], 'time_taken': -5},
        {'quiz_id': 1, 'answers': [], 'time_taken': 'soon'},
        {'quiz_id': True, 'answers': []},
        {'quiz_id': 2.7, 'answers': []},
        {'question_ids': [True], 'answers': ['x']},
        {'answers': []},
    ])
    def test_invalid_payloads(self, register, payload):
        client, _ = register()
        assert client.post('/quiz/submit', json=payload).status_code == 400

    def test_quiz_id_must_be_an_integer(self, register, fake_ai, sample_reply):
        client, _ = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)
        assert quiz['id'] == 1

        for bad_id in (True, 1.0, '1.5'):
            response = client.post('/quiz/submit', json={'quiz_id': bad_id, 'answers': correct_answers(quiz)})
            assert response.status_code == 400, bad_id

        by_string = client.post('/quiz/submit', json={'quiz_id': '1', 'answers': correct_answers(quiz)})
        assert by_string.status_code == 200

    def test_infinite_time_taken_is_rejected(self, app, register, fake_ai, sample_reply):
        client, _ = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)
        body = '{"quiz_id": %d, "answers": [], "time_taken": 1e400}' % quiz['id']

        response = client.post('/quiz/submit', data=body, content_type='application/json')

        assert response.status_code == 400
        with app.app_context():
            assert QuizSubmission.query.count() == 0

    def test_progress_failure_does_not_fail_submission(self, app, register, fake_ai, sample_reply, monkeypatch):
        client, user = register()
        quiz = create_text_quiz(client, fake_ai, sample_reply)

        def boom(user_id, **counters):
            raise RuntimeError('progress store unavailable')
        monkeypatch.setattr(app_module.ProgressService, 'increment', staticmethod(boom))

        response = client.post('/quiz/submit', json={
            'quiz_id': quiz['id'],
            'answers': correct_answers(quiz),
            'time_taken': 10,
        })

        assert response.status_code == 200
        assert response.get_json()['score'] == QUIZ_SIZE
        with app.app_context():
            assert QuizSubmission.query.filter_by(user_id=user['id']).count() == 1


class TestQuizHistory:

    def test_newest_first_with_topic(self, register, fake_ai, sample_reply):
        client, _ = register()
        first = create_text_quiz(client, fake_ai, sample_reply, topic='Geography')
        second = create_text_quiz(client, fake_ai, sample_reply, topic='Maths')
        client.post('/quiz/submit', json={'quiz_id': first['id'], 'answers': correct_answers(first)})
        client.post('/quiz/submit', json={'quiz_id': second['id'], 'answers': [None] * QUIZ_SIZE})

        history = client.get('/quiz/history').get_json()['quizzes']

        assert [h['topic'] for h in history] == ['Maths', 'Geography']
        assert [h['score'] for h in history] == [0, QUIZ_SIZE]

    def test_only_own_submissions(self, register, fake_ai, sample_reply):
        alice, _ = register('alice')
        quiz = create_text_quiz(alice, fake_ai, sample_reply)
        alice.post('/quiz/submit', json={'quiz_id': quiz['id'], 'answers': correct_answers(quiz)})
        bob, _ = register('bob')

        assert bob.get('/quiz/history').get_json()['quizzes'] == []
