from flask import Flask, request, session, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager, login_user, logout_user, login_required, current_user, UserMixin
from flask_socketio import SocketIO, emit
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from datetime import datetime
from urllib.parse import quote
from pytz import timezone, utc
import logging
import math
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

import ai_service
from ai_service import AIServiceError
from file_extractor import allowed_file, extract_text_from_file, TextExtractionError, UnsupportedFileTypeError
from presence import PresenceRegistry
from quiz_service import (
    QuizGenerationError,
    build_flashcard_questions,
    generate_quiz_from_text,
    grade_submission,
)

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger('studybuddy')

# Check for required API Key
if not os.getenv("AI_API_KEY"):
    logger.warning(
        "AI_API_KEY is missing! Quiz and flashcard generation will fail until it is set "
        "(add AI_API_KEY=... and AI_API_TYPE=google|openai to a .env file)."
    )

app = Flask(__name__)

app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

database_url = os.getenv('DATABASE_URL', 'sqlite:///studybuddy.db')
# Heroku/Render style URLs use the deprecated scheme
if database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
if not database_url.startswith('sqlite'):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
        'pool_size': 20,
        'max_overflow': 10,
    }

app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER', 'uploads')
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_UPLOAD_MB', '16')) * 1024 * 1024
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('RENDER') is not None

os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

cors_setting = os.getenv('CORS_ORIGINS', '*')
cors_origins = '*' if cors_setting == '*' else [o.strip() for o in cors_setting.split(',') if o.strip()]

# Initialize SocketIO
socketio = SocketIO(app, cors_allowed_origins=cors_origins, async_mode=os.getenv('SOCKETIO_ASYNC_MODE') or None)

db = SQLAlchemy(app)

login_manager = LoginManager()
login_manager.init_app(app)

presence = PresenceRegistry()

APP_TZ = timezone(os.getenv('APP_TIMEZONE', 'Asia/Kolkata'))

TASK_STATUSES = ('Backlog', 'ToDo', 'In Progress', 'Completed')
IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg'}


def to_local_time(utc_datetime):
    """Convert a naive UTC datetime to APP_TZ and return a 12-hour time string."""
    if not utc_datetime:
        return ""

    if utc_datetime.tzinfo is None:
        utc_datetime = utc.localize(utc_datetime)

    return utc_datetime.astimezone(APP_TZ).strftime('%I:%M %p')


def isoformat(value):
    return value.isoformat() if value else None


# Database Models
class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    username = db.Column(db.String(50), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    profile_picture = db.Column(db.String(255), nullable=True)
    country = db.Column(db.String(100))
    state = db.Column(db.String(100))
    education_level = db.Column(db.String(100))
    subject = db.Column(db.String(100))
    study_goals = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'username': self.username,
            'email': self.email,
            'profile_picture': self.profile_picture,
            'country': self.country,
            'state': self.state,
            'education_level': self.education_level,
            'subject': self.subject,
            'study_goals': self.study_goals,
            'created_at': isoformat(self.created_at),
        }


class Flashcard(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    topic = db.Column(db.String(200), nullable=False)
    question = db.Column(db.Text, nullable=False)
    answer = db.Column(db.Text, nullable=False)
    notes = db.Column(db.Text, default='')
    image = db.Column(db.String(500), nullable=True)
    reviewed = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'topic': self.topic,
            'question': self.question,
            'answer': self.answer,
            'notes': self.notes,
            'image': self.image,
            'reviewed': bool(self.reviewed),
            'created_at': isoformat(self.created_at),
        }


class Quiz(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    topic = db.Column(db.String(200), nullable=False)
    source_type = db.Column(db.String(20), nullable=False)  # text, file, flashcard
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    questions = db.relationship(
        'QuizQuestion',
        backref='quiz',
        order_by='QuizQuestion.position',
        cascade='all, delete-orphan',
    )

    def to_dict(self, include_answers=True):
        return {
            'id': self.id,
            'topic': self.topic,
            'source_type': self.source_type,
            'created_by': self.user_id,
            'created_at': isoformat(self.created_at),
            'questions': [q.to_dict(include_answers) for q in self.questions],
        }


class QuizQuestion(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    question_text = db.Column(db.Text, nullable=False)
    options = db.Column(db.JSON, nullable=False)
    correct_answer = db.Column(db.Text, nullable=False)

    def to_dict(self, include_answer=True):
        data = {
            'id': self.id,
            'question': self.question_text,
            'options': list(self.options),
        }
        if include_answer:
            data['correct_answer'] = self.correct_answer
        return data


class QuizSubmission(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    question_ids = db.Column(db.JSON, nullable=False)
    user_answers = db.Column(db.JSON, nullable=False)
    results = db.Column(db.JSON, nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    total_questions = db.Column(db.Integer, nullable=False)
    time_taken = db.Column(db.Integer, default=0)  # seconds
    taken_at = db.Column(db.DateTime, default=datetime.utcnow)

    quiz = db.relationship('Quiz')

    def to_dict(self):
        return {
            'submission_id': self.id,
            'quiz_id': self.quiz_id,
            'topic': self.quiz.topic if self.quiz else None,
            'score': self.score,
            'total_questions': self.total_questions,
            'time_taken': self.time_taken,
            'taken_at': isoformat(self.taken_at),
            'user_answers': self.user_answers,
            'results': self.results,
        }


class Progress(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    flashcards_completed = db.Column(db.Integer, default=0)
    quizzes_taken = db.Column(db.Integer, default=0)
    total_quiz_score = db.Column(db.Integer, default=0)
    total_time_spent = db.Column(db.Integer, default=0)  # seconds
    tasks_completed = db.Column(db.Integer, default=0)
    current_topic = db.Column(db.String(200), default='')
    last_updated = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'flashcards_completed': self.flashcards_completed or 0,
            'quizzes_taken': self.quizzes_taken or 0,
            'total_quiz_score': self.total_quiz_score or 0,
            'total_time_spent': self.total_time_spent or 0,
            'tasks_completed': self.tasks_completed or 0,
            'current_topic': self.current_topic or '',
            'last_updated': isoformat(self.last_updated),
        }


class Todo(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='ToDo')
    due_date = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'due_date': isoformat(self.due_date),
            'created_at': isoformat(self.created_at),
        }


class Message(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    receiver_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'sender_id': self.sender_id,
            'receiver_id': self.receiver_id,
            'text': self.text,
            'created_at': isoformat(self.created_at),
            'time': to_local_time(self.created_at),
        }


# ------------------------------
# OOP Services
# ------------------------------

class AuthService:
    """Account creation and password checks."""

    REQUIRED_FIELDS = ('full_name', 'username', 'email', 'password')
    PROFILE_FIELDS = ('country', 'state', 'education_level', 'subject', 'study_goals')

    @staticmethod
    def create_user(data, profile_picture=None) -> "User":
        values = {field: str(data.get(field) or '').strip() for field in AuthService.REQUIRED_FIELDS}
        missing = [field for field, value in values.items() if not value]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")

        email = values['email'].lower()
        password = data.get('password')
        confirm = data.get('confirm_password')
        if confirm is not None and confirm != password:
            raise ValueError("Passwords do not match")

        if User.query.filter_by(email=email).first():
            raise ValueError("Email already in use")
        if User.query.filter_by(username=values['username']).first():
            raise ValueError("Username already taken")

        user = User(
            full_name=values['full_name'],
            username=values['username'],
            email=email,
            password_hash=generate_password_hash(password),
            profile_picture=profile_picture,
            **{field: (str(data.get(field)).strip() if data.get(field) else None) for field in AuthService.PROFILE_FIELDS},
        )
        db.session.add(user)
        db.session.commit()
        return user

    @staticmethod
    def authenticate(email: str, password: str):
        user = User.query.filter_by(email=(email or '').strip().lower()).first()
        if not user or not password:
            return None
        if check_password_hash(user.password_hash, password):
            return user
        return None


class ProgressService:
    """Per-user study counters (flashcards, quizzes, tasks)."""

    @staticmethod
    def get_or_create(user_id):
        progress = Progress.query.filter_by(user_id=user_id).first()
        if not progress:
            progress = Progress(user_id=user_id)
            db.session.add(progress)
        return progress

    @staticmethod
    def increment(user_id, **counters):
        progress = ProgressService.get_or_create(user_id)
        for field, amount in counters.items():
            setattr(progress, field, (getattr(progress, field) or 0) + amount)
        progress.last_updated = datetime.utcnow()
        db.session.commit()
        return progress

    @staticmethod
    def record(user_id, **counters):
        """Best-effort increment: a failure is logged and never raised."""
        try:
            ProgressService.increment(user_id, **counters)
        except Exception:
            db.session.rollback()
            logger.exception("Failed to update progress for user %s (%s)", user_id, counters)


class FlashcardService:
    """Flashcard creation (manual or AI), grouping and review."""

    @staticmethod
    def placeholder_image(description):
        return f"https://dummyimage.com/600x400/000/fff&text={quote(description)}"

    @staticmethod
    def generate_with_ai(text, topic):
        prompt = (
            "Extract at least 5 question-answer pairs from the following study material. "
            "If an image is relevant to better understanding, provide a short image description.\n\n"
            "Format: [{\"question\": \"...?\", \"answer\": \"...\", \"imageDescription\": \"...\"}]\n\n"
            f"Topic: {topic}\n"
            f"Text: {text[:30000]}"
        )
        reply = ai_service.generate_text(prompt)

        try:
            parsed = ai_service.extract_json(reply)
        except ValueError:
            logger.warning("AI flashcard reply was not valid JSON")
            return []
        if not isinstance(parsed, list):
            return []

        cards = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            question = str(item.get('question') or '').strip()
            answer = str(item.get('answer') or '').strip()
            if not question or not answer:
                continue
            description = str(item.get('imageDescription') or '').strip()
            cards.append({
                'question': question,
                'answer': answer,
                'image': FlashcardService.placeholder_image(description) if description else None,
            })
        return cards

    @staticmethod
    def save_cards(user_id, topic, notes, cards):
        rows = []
        for card in cards:
            if not isinstance(card, dict):
                raise ValueError("Each flashcard must be an object.")
            question = str(card.get('question') or '').strip()
            answer = str(card.get('answer') or '').strip()
            if not question or not answer:
                raise ValueError("Each flashcard needs a question and an answer.")
            rows.append(Flashcard(
                user_id=user_id,
                topic=topic,
                notes=notes or '',
                question=question,
                answer=answer,
                image=card.get('image') or None,
                reviewed=False,
            ))
        if not rows:
            raise ValueError("No flashcards provided.")

        db.session.add_all(rows)
        db.session.commit()
        ProgressService.record(user_id, flashcards_completed=len(rows))
        return rows

    @staticmethod
    def group_by_topic(query):
        grouped = {}
        for card in query.order_by(Flashcard.created_at.asc(), Flashcard.id.asc()).all():
            grouped.setdefault(card.topic, []).append(card.to_dict())
        return grouped

    @staticmethod
    def review(card):
        if card.reviewed:
            return False
        card.reviewed = True
        db.session.commit()
        ProgressService.record(card.user_id, flashcards_completed=1)
        return True


def extract_upload_text(upload):
    """Save an uploaded document, extract its text and remove the file again."""
    if upload is None or not upload.filename:
        raise ValueError('No file uploaded.')
    if not allowed_file(upload.filename):
        raise UnsupportedFileTypeError('Only .txt, .pdf, .csv, .docx and .pptx files are allowed!')

    # secure_filename drops non-ASCII names entirely, extension included
    ext = os.path.splitext(upload.filename)[1].lower()
    filename = os.path.splitext(secure_filename(upload.filename))[0] or 'upload'
    timestamp = datetime.now().strftime('%Y%m%d%H%M%S%f')
    save_path = os.path.join(app.config['UPLOAD_FOLDER'], f"{timestamp}_{filename}{ext}")
    upload.save(save_path)
    try:
        text = extract_text_from_file(save_path, upload.mimetype)
    finally:
        os.remove(save_path)

    if not text or not text.strip():
        raise TextExtractionError('Failed to extract text from file.')
    return text


class QuizService:
    """Persistence around the quiz pipeline in quiz_service."""

    @staticmethod
    def save_quiz(user_id, topic, source_type, questions) -> Quiz:
        quiz = Quiz(user_id=user_id, topic=topic, source_type=source_type)
        for position, question in enumerate(questions):
            quiz.questions.append(QuizQuestion(
                position=position,
                question_text=question.question_text,
                options=list(question.options),
                correct_answer=question.correct_answer,
            ))
        db.session.add(quiz)
        db.session.commit()
        return quiz

    @staticmethod
    def questions_by_ids(question_ids):
        """Load questions in the given order; None if any id is unknown."""
        found = {q.id: q for q in QuizQuestion.query.filter(QuizQuestion.id.in_(question_ids)).all()}
        if any(qid not in found for qid in question_ids):
            return None
        return [found[qid] for qid in question_ids]

    @staticmethod
    def submit(user_id, quiz, questions, answers, time_taken):
        score, results = grade_submission(questions, answers)

        submission = QuizSubmission(
            quiz_id=quiz.id if quiz else None,
            user_id=user_id,
            question_ids=[q.id for q in questions],
            user_answers=list(answers),
            results=results,
            score=score,
            total_questions=len(questions),
            time_taken=time_taken,
        )
        db.session.add(submission)
        db.session.commit()

        ProgressService.record(
            user_id,
            quizzes_taken=1,
            total_quiz_score=score,
            total_time_spent=time_taken,
        )
        return submission


class LeaderboardService:

    @staticmethod
    def top(limit=10):
        quiz_scores = dict(
            db.session.query(QuizSubmission.user_id, db.func.coalesce(db.func.sum(QuizSubmission.score), 0))
            .group_by(QuizSubmission.user_id)
            .all()
        )
        flashcard_scores = dict(db.session.query(Progress.user_id, Progress.flashcards_completed).all())

        leaderboard = []
        for user in User.query.order_by(User.id.asc()).all():
            flashcard_score = int(flashcard_scores.get(user.id) or 0)
            quiz_score = int(quiz_scores.get(user.id) or 0)
            leaderboard.append({
                'user': {
                    'id': user.id,
                    'name': user.username or 'Unknown',
                    'full_name': user.full_name,
                },
                'flashcard_score': flashcard_score,
                'quiz_score': quiz_score,
                'total_score': flashcard_score + quiz_score,
            })

        # sort is stable: ties keep registration order
        leaderboard.sort(key=lambda entry: entry['total_score'], reverse=True)
        leaderboard = leaderboard[:limit]
        for rank, entry in enumerate(leaderboard, start=1):
            entry['rank'] = rank
        return leaderboard


class MessageService:

    @staticmethod
    def conversation(user_id, other_id):
        return (
            Message.query
            .filter(
                ((Message.sender_id == user_id) & (Message.receiver_id == other_id)) |
                ((Message.sender_id == other_id) & (Message.receiver_id == user_id))
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    @staticmethod
    def send(sender_id, receiver_id, text):
        message = Message(sender_id=sender_id, receiver_id=receiver_id, text=text)
        db.session.add(message)
        db.session.commit()
        relay_to_user(receiver_id, 'newMessage', message.to_dict())
        return message


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Authentication required.'}), 401


def error_response(message, status):
    return jsonify({'error': message}), status


def request_data():
    """JSON body if there is one, otherwise the submitted form."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form


def parse_id(value):
    """Integer id from JSON: an int or a digit string, never a bool or float."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"Invalid id: {value!r}")
    return int(value)


def like_pattern(text):
    """Substring LIKE pattern matching ``text`` literally (escape char is a backslash)."""
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


# ------------------------------
# Users
# ------------------------------

@app.route('/user/reg', methods=['POST'])
def register():
    data = request_data()

    profile_picture = None
    upload = request.files.get('profile_picture')
    if upload and upload.filename:
        ext = os.path.splitext(upload.filename)[1].lower()
        if ext not in IMAGE_EXTENSIONS:
            return error_response('Only PNG and JPEG images are allowed.', 400)
        images_dir = os.path.join(app.config['UPLOAD_FOLDER'], 'images')
        os.makedirs(images_dir, exist_ok=True)
        unique_filename = f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{secure_filename(upload.filename)}"
        upload.save(os.path.join(images_dir, unique_filename))
        profile_picture = f"uploads/images/{unique_filename}"

    try:
        user = AuthService.create_user(data, profile_picture=profile_picture)
    except ValueError as e:
        return error_response(str(e), 400)

    login_user(user, remember=True)
    session.permanent = True
    return jsonify({'message': 'Registration successful', 'user': user.to_dict()}), 201


@app.route('/user/login', methods=['POST'])
def login():
    data = request_data()
    user = AuthService.authenticate(data.get('email'), data.get('password'))
    if not user:
        return error_response('Invalid email or password.', 401)

    login_user(user, remember=True)
    session.permanent = True
    return jsonify({'message': 'Login successful', 'user': user.to_dict()})


@app.route('/user/logout', methods=['POST'])
@login_required
def logout():
    session.clear()
    logout_user()
    return jsonify({'message': 'Logged out'})


@app.route('/user/details')
@login_required
def user_details():
    return jsonify({'user': current_user.to_dict()})


@app.route('/user/search-users')
@login_required
def search_users():
    query = request.args.get('q', '').strip()
    if len(query) < 2:
        return jsonify({'users': []})

    pattern = like_pattern(query)
    users = User.query.filter(
        (User.id != current_user.id) &
        (
            User.username.ilike(pattern, escape='\\') |
            User.full_name.ilike(pattern, escape='\\') |
            User.email.ilike(pattern, escape='\\')
        )
    ).limit(10).all()
    return jsonify({'users': [u.to_dict() for u in users]})


# ------------------------------
# Flashcards
# ------------------------------

@app.route('/flashcards', methods=['POST'])
@login_required
def flashcards_create():
    data = request_data()
    topic = str(data.get('topic') or '').strip()
    notes = data.get('notes') or ''
    if not topic:
        return error_response('Topic is required.', 400)

    try:
        cards = data.get('flashcards')
        if isinstance(cards, list):
            saved = FlashcardService.save_cards(current_user.id, topic, notes, cards)
            return jsonify({
                'message': f'{len(saved)} flashcards created successfully!',
                'flashcards': [c.to_dict() for c in saved],
            }), 201

        if request.files.get('file'):
            text = extract_upload_text(request.files['file'])
        elif data.get('text') is not None:
            text = str(data.get('text')).strip()
            if not text:
                return error_response('Text is empty.', 400)
        else:
            return error_response('No valid data provided for flashcards.', 400)

        generated = FlashcardService.generate_with_ai(text, topic)
        if len(generated) < 2:
            return error_response('AI did not generate enough flashcards.', 400)

        saved = FlashcardService.save_cards(current_user.id, topic, notes, generated)
        return jsonify({
            'message': f'{len(saved)} AI-generated flashcards created!',
            'flashcards': [c.to_dict() for c in saved],
        }), 201
    except AIServiceError as e:
        logger.error("Flashcard generation failed: %s", e)
        return error_response(f'Error generating flashcards: {e}', 500)
    except ValueError as e:
        db.session.rollback()
        return error_response(str(e), 400)


@app.route('/flashcards', methods=['GET'])
@login_required
def flashcards_list():
    query = Flashcard.query
    owner_id = request.args.get('id', type=int)
    topic = request.args.get('topic', '').strip()
    if owner_id:
        query = query.filter(Flashcard.user_id == owner_id)
    if topic:
        query = query.filter(Flashcard.topic.ilike(like_pattern(topic), escape='\\'))

    flashcards = query.order_by(Flashcard.created_at.asc(), Flashcard.id.asc()).all()
    if not flashcards:
        return error_response('No flashcards found.', 404)
    return jsonify({'flashcards': [c.to_dict() for c in flashcards]})


@app.route('/flashcards/grouped')
@login_required
def flashcards_grouped():
    return jsonify({'grouped': FlashcardService.group_by_topic(Flashcard.query)})


@app.route('/flashcards/mine/grouped')
@login_required
def flashcards_mine_grouped():
    query = Flashcard.query.filter_by(user_id=current_user.id)
    return jsonify({'grouped': FlashcardService.group_by_topic(query)})


@app.route('/flashcards/topic/<topic>')
@login_required
def flashcards_by_topic(topic):
    flashcards = (
        Flashcard.query
        .filter(Flashcard.user_id == current_user.id, Flashcard.topic.ilike(like_pattern(topic), escape='\\'))
        .order_by(Flashcard.created_at.asc(), Flashcard.id.asc())
        .all()
    )
    if not flashcards:
        return error_response('No flashcards found for this topic.', 404)
    return jsonify({'flashcards': [c.to_dict() for c in flashcards]})


@app.route('/flashcards/<int:flashcard_id>', methods=['PUT'])
@login_required
def flashcards_update(flashcard_id):
    flashcard = db.get_or_404(Flashcard, flashcard_id)
    if flashcard.user_id != current_user.id:
        return error_response('Unauthorized action.', 403)

    data = request_data()
    flashcard.topic = str(data.get('topic') or '').strip() or flashcard.topic
    flashcard.question = str(data.get('question') or '').strip() or flashcard.question
    flashcard.answer = str(data.get('answer') or '').strip() or flashcard.answer
    if data.get('notes') is not None:
        flashcard.notes = data.get('notes')
    if data.get('image'):
        flashcard.image = data.get('image')
    db.session.commit()

    return jsonify({'message': 'Flashcard updated successfully!', 'flashcard': flashcard.to_dict()})


@app.route('/flashcards/<int:flashcard_id>', methods=['DELETE'])
@login_required
def flashcards_delete(flashcard_id):
    flashcard = db.get_or_404(Flashcard, flashcard_id)
    if flashcard.user_id != current_user.id:
        return error_response('You are not authorized to delete this flashcard', 403)

    db.session.delete(flashcard)
    db.session.commit()
    return jsonify({'message': 'Flashcard deleted successfully'})


@app.route('/flashcards/<int:flashcard_id>/review', methods=['POST'])
@login_required
def flashcards_review(flashcard_id):
    flashcard = db.get_or_404(Flashcard, flashcard_id)
    if flashcard.user_id != current_user.id:
        return error_response('Unauthorized action.', 403)

    if FlashcardService.review(flashcard):
        return jsonify({'message': 'Flashcard marked as reviewed.'})
    return jsonify({'message': 'Flashcard already reviewed.'})


# ------------------------------
# Quizzes
# ------------------------------

@app.route('/quiz', methods=['POST'])
@login_required
def quiz_create():
    data = request_data()
    topic = str(data.get('topic') or '').strip()
    source_type = str(data.get('source_type') or '').strip().lower()
    if not topic:
        return error_response('Topic is required.', 400)

    try:
        if source_type == 'text':
            questions = generate_quiz_from_text(str(data.get('text') or ''))
        elif source_type == 'file':
            questions = generate_quiz_from_text(extract_upload_text(request.files.get('file')))
        elif source_type == 'flashcard':
            cards = (
                Flashcard.query
                .filter_by(user_id=current_user.id, topic=topic)
                .order_by(Flashcard.created_at.asc(), Flashcard.id.asc())
                .all()
            )
            questions = build_flashcard_questions(cards)
        else:
            return error_response('Invalid source type.', 400)

        quiz = QuizService.save_quiz(current_user.id, topic, source_type, questions)
    except QuizGenerationError as e:
        logger.error("Quiz creation error: %s", e)
        return error_response(f'Error creating quiz: {e}', 500)
    except ValueError as e:
        return error_response(str(e), 400)

    return jsonify({'message': 'Quiz created successfully!', 'quiz': quiz.to_dict()}), 201


@app.route('/quiz/<int:quiz_id>')
@login_required
def quiz_detail(quiz_id):
    quiz = db.get_or_404(Quiz, quiz_id)
    return jsonify({'quiz': quiz.to_dict(include_answers=quiz.user_id == current_user.id)})


@app.route('/quiz/submit', methods=['POST'])
@login_required
def quiz_submit():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('Invalid request body.', 400)

    answers = data.get('answers')
    if not isinstance(answers, list):
        return error_response('Invalid answers data.', 400)

    time_taken = data.get('time_taken', 0)
    if (isinstance(time_taken, bool) or not isinstance(time_taken, (int, float))
            or not math.isfinite(time_taken) or time_taken < 0):
        return error_response('time_taken must be a non-negative number of seconds.', 400)

    quiz = None
    try:
        if data.get('quiz_id') is not None:
            quiz = db.session.get(Quiz, parse_id(data['quiz_id']))
            if not quiz:
                return error_response('Quiz not found.', 404)
            questions = list(quiz.questions)
        elif isinstance(data.get('question_ids'), list) and data['question_ids']:
            questions = QuizService.questions_by_ids([parse_id(qid) for qid in data['question_ids']])
            if questions is None:
                return error_response('Question not found.', 404)
        else:
            return error_response('quiz_id or question_ids is required.', 400)
    except (TypeError, ValueError):
        return error_response('Invalid quiz or question id.', 400)

    try:
        submission = QuizService.submit(current_user.id, quiz, questions, answers, int(time_taken))
    except ValueError as e:
        return error_response(str(e), 400)

    return jsonify({
        'message': 'Quiz submitted!',
        'submission_id': submission.id,
        'quiz_id': submission.quiz_id,
        'score': submission.score,
        'time_taken': submission.time_taken,
        'total_questions': submission.total_questions,
        'results': submission.results,
    })


@app.route('/quiz/history')
@login_required
def quiz_history():
    submissions = (
        QuizSubmission.query
        .filter_by(user_id=current_user.id)
        .order_by(QuizSubmission.taken_at.desc(), QuizSubmission.id.desc())
        .all()
    )
    return jsonify({'quizzes': [s.to_dict() for s in submissions]})


# ------------------------------
# Progress & Leaderboard
# ------------------------------

@app.route('/progress')
@login_required
def progress_get():
    progress = ProgressService.get_or_create(current_user.id)
    db.session.commit()
    return jsonify(progress.to_dict())


@app.route('/progress/flashcard', methods=['POST'])
@login_required
def progress_flashcard():
    ProgressService.increment(current_user.id, flashcards_completed=1)
    return jsonify({'message': 'Flashcard progress updated!'})


@app.route('/progress/quiz', methods=['POST'])
@login_required
def progress_quiz():
    ProgressService.increment(current_user.id, quizzes_taken=1)
    return jsonify({'message': 'Quiz progress updated!'})


@app.route('/leaderboard')
def leaderboard():
    return jsonify({'leaderboard': LeaderboardService.top(10)})


# ------------------------------
# Tasks (to-dos)
# ------------------------------

def parse_due_date(value):
    if not value:
        return None
    try:
        due_date = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValueError('due_date must be an ISO 8601 date.')
    if due_date.tzinfo is not None:
        due_date = due_date.astimezone(utc).replace(tzinfo=None)
    return due_date


@app.route('/tasks', methods=['POST'])
@login_required
def tasks_add():
    data = request_data()
    title = str(data.get('title') or '').strip()
    status = data.get('status') or 'ToDo'
    if not title:
        return error_response('Title is required.', 400)
    if status not in TASK_STATUSES:
        return error_response(f"Status must be one of: {', '.join(TASK_STATUSES)}", 400)

    try:
        due_date = parse_due_date(data.get('due_date'))
    except ValueError as e:
        return error_response(str(e), 400)

    task = Todo(
        user_id=current_user.id,
        title=title,
        description=data.get('description'),
        status=status,
        due_date=due_date or datetime.utcnow(),
    )
    db.session.add(task)
    db.session.commit()

    if status == 'Completed':
        ProgressService.record(current_user.id, tasks_completed=1)
    return jsonify({'message': 'Task added successfully', 'task': task.to_dict()}), 201


@app.route('/tasks', methods=['GET'])
@login_required
def tasks_list():
    tasks = Todo.query.filter_by(user_id=current_user.id).order_by(Todo.created_at.desc(), Todo.id.desc()).all()
    return jsonify({'tasks': [t.to_dict() for t in tasks]})


@app.route('/tasks/<int:task_id>', methods=['PUT'])
@login_required
def tasks_update(task_id):
    task = Todo.query.filter_by(id=task_id, user_id=current_user.id).first()
    if not task:
        return error_response('Task not found', 404)

    data = request_data()
    status = data.get('status')
    if status is not None and status not in TASK_STATUSES:
        return error_response(f"Status must be one of: {', '.join(TASK_STATUSES)}", 400)
    try:
        due_date = parse_due_date(data.get('due_date'))
    except ValueError as e:
        return error_response(str(e), 400)

    was_completed = task.status == 'Completed'
    if data.get('title'):
        task.title = str(data['title']).strip() or task.title
    if data.get('description') is not None:
        task.description = data.get('description')
    if status:
        task.status = status
    if due_date:
        task.due_date = due_date
    db.session.commit()

    if task.status == 'Completed' and not was_completed:
        ProgressService.record(current_user.id, tasks_completed=1)
    return jsonify({'message': 'Task updated successfully', 'task': task.to_dict()})


@app.route('/tasks/<int:task_id>', methods=['DELETE'])
@login_required
def tasks_delete(task_id):
    task = Todo.query.filter_by(id=task_id, user_id=current_user.id).first()
    if not task:
        return error_response('Task not found', 404)

    db.session.delete(task)
    db.session.commit()
    return jsonify({'message': 'Task deleted successfully'})


# ------------------------------
# Direct messages
# ------------------------------

@app.route('/messages/users')
@login_required
def messages_users():
    users = User.query.filter(User.id != current_user.id).order_by(User.full_name.asc()).all()
    return jsonify({'users': [
        {**u.to_dict(), 'online': presence.is_online(u.id)}
        for u in users
    ]})


@app.route('/messages/<int:user_id>')
@login_required
def messages_get(user_id):
    db.get_or_404(User, user_id)
    messages = MessageService.conversation(current_user.id, user_id)
    return jsonify({'messages': [m.to_dict() for m in messages]})


@app.route('/messages/send/<int:user_id>', methods=['POST'])
@login_required
def messages_send(user_id):
    db.get_or_404(User, user_id)
    text = str(request_data().get('text') or '').strip()
    if not text:
        return error_response('Message text is required.', 400)

    message = MessageService.send(current_user.id, user_id, text)
    return jsonify({'message': message.to_dict()}), 201


# ------------------------------
# Error handlers
# ------------------------------

@app.errorhandler(404)
def not_found(e):
    return error_response('Not found.', 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return error_response('Method not allowed.', 405)


@app.errorhandler(413)
def file_too_large(e):
    return error_response('File too large.', 413)


@app.errorhandler(500)
def internal_error(e):
    db.session.rollback()
    logger.error("Unhandled error: %s", e)
    return error_response('Internal server error.', 500)


# ------------------------------
# SocketIO & Real-time Logic
# ------------------------------

def relay_to_user(user_id, event, payload=None):
    """Emit ``event`` to the user's current connection, or drop it if offline."""
    sid = presence.lookup(user_id)
    if not sid:
        logger.debug("Dropping %s for offline user %s", event, user_id)
        return False
    if payload is None:
        socketio.emit(event, to=sid)
    else:
        socketio.emit(event, payload, to=sid)
    return True


def broadcast_online_users():
    socketio.emit('getOnlineUsers', presence.online_users())


def signal_payload(data):
    return data if isinstance(data, dict) else {}


@socketio.on('connect')
def on_connect(auth=None):
    user_id = request.args.get('userId')
    if not user_id and isinstance(auth, dict):
        user_id = auth.get('userId')
    if not user_id and current_user.is_authenticated:
        user_id = current_user.id

    if user_id:
        presence.connect(user_id, request.sid)
        broadcast_online_users()


@socketio.on('disconnect')
def on_disconnect(reason=None):
    if presence.disconnect(request.sid) is not None:
        broadcast_online_users()


@socketio.on('call-user')
def on_call_user(data):
    data = signal_payload(data)
    relay_to_user(data.get('to'), 'incoming-call', {
        'from': data.get('from') or presence.user_for(request.sid),
        'signal': data.get('signal'),
    })


@socketio.on('answer-call')
def on_answer_call(data):
    data = signal_payload(data)
    relay_to_user(data.get('to'), 'call-accepted', {
        'from': data.get('from') or presence.user_for(request.sid),
        'signal': data.get('signal'),
    })


@socketio.on('audio-call-request')
def on_audio_call_request(data):
    data = signal_payload(data)
    relay_to_user(data.get('to'), 'incoming-audio-call', {
        'from': data.get('from') or presence.user_for(request.sid),
    })


@socketio.on('end-call')
def on_end_call(data):
    data = signal_payload(data)
    relay_to_user(data.get('to'), 'call-ended')
    emit('call-ended')


@socketio.on('reject-call')
def on_reject_call(data):
    data = signal_payload(data)
    relay_to_user(data.get('to'), 'call-rejected')


# ==========================================
# Database Initialization
# ==========================================
def init_db():
    with app.app_context():
        db.create_all()
        logger.info("Database tables verified/created.")


# Initialize DB immediately
init_db()
