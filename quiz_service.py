"""Quiz generation and grading.

Questions come from one of two sources: AI output in the line-oriented
``Q: / Options: / Answer:`` format, or a user's own flashcards. Either way a
stored quiz holds exactly ``QUIZ_SIZE`` questions, each with four unique
options, one of which is the correct answer.
"""

import logging
import random
import re
from collections import namedtuple

import ai_service

logger = logging.getLogger(__name__)

QUIZ_SIZE = 20
OPTIONS_PER_QUESTION = 4
MAX_SOURCE_CHARS = 30000

QUIZ_PROMPT_TEMPLATE = (
    "Generate exactly {count} multiple-choice questions from this text:\n"
    "\"{text}\"\n"
    "Each question should follow this format, with a blank line between questions:\n"
    "Q: Question here?\n"
    "Options: Option1, Option2, Option3, Option4\n"
    "Answer: CorrectOption"
)

# Filler phrases used as wrong answers for flashcard-derived questions.
DISTRACTOR_POOL = (
    'Cloud storage techniques',
    'Data encryption methods',
    'System architecture patterns',
    'AI model tuning strategies',
    'Code versioning best practices',
)

ParsedQuestion = namedtuple('ParsedQuestion', ['question_text', 'options', 'correct_answer'])
SkippedBlock = namedtuple('SkippedBlock', ['block', 'reason'])

BLOCK_SEPARATOR = re.compile(r'\n\s*\n')
# a "Q:" line directly after the previous answer still starts a new block
QUESTION_START = re.compile(r'\n(?=[ \t]*(?:\d+[.)][ \t]*)?\**Q:)')
BLOCK_PATTERN = re.compile(r'Q:(.*?)Options:(.*?)Answer:(.*)', re.S | re.I)
LABEL_PATTERN = re.compile(r'^(?:\([A-Da-d1-4]\)\s*|[A-Da-d1-4][).:]\s+)')
ANSWER_LETTERS = 'ABCD'


class QuizGenerationError(ValueError):
    """No usable questions could be produced."""


class NoSourceDataError(ValueError):
    """There is nothing to build questions from (e.g. no flashcards)."""


def _clean(value):
    return value.strip().strip('*').strip()


def _strip_label(value):
    return LABEL_PATTERN.sub('', value, count=1).strip()


def _split_options(raw_options):
    options = []
    for part in raw_options.replace('\n', ' ').split(','):
        option = _strip_label(_clean(part))
        if option:
            options.append(option)
    return options[:OPTIONS_PER_QUESTION]


def _resolve_answer(raw_answer, options):
    lines = _clean(raw_answer).splitlines()
    if not lines:
        return None
    first_line = _clean(lines[0])
    answer = _strip_label(first_line)
    if answer in options:
        return answer

    # "Answer: B" / "Answer: (b)"
    letter = first_line.strip('().: ').upper()
    if len(letter) == 1 and letter in ANSWER_LETTERS:
        return options[ANSWER_LETTERS.index(letter)]
    return None


def parse_quiz_response(text):
    """Split AI output into questions.

    Returns ``(questions, skipped)`` where ``skipped`` lists every block that
    could not be turned into a valid question together with the reason.
    """
    questions = []
    skipped = []

    normalized = QUESTION_START.sub('\n\n', (text or '').replace('\r\n', '\n'))
    for block in BLOCK_SEPARATOR.split(normalized):
        block = block.strip()
        if not block:
            continue

        match = BLOCK_PATTERN.search(block)
        if not match:
            skipped.append(SkippedBlock(block, 'missing Q:/Options:/Answer: sections'))
            continue

        question_text = _clean(match.group(1))
        if not question_text:
            skipped.append(SkippedBlock(block, 'empty question text'))
            continue

        options = _split_options(match.group(2))
        if len(options) < OPTIONS_PER_QUESTION:
            skipped.append(SkippedBlock(block, f'expected {OPTIONS_PER_QUESTION} options, got {len(options)}'))
            continue
        if len(set(options)) != len(options):
            skipped.append(SkippedBlock(block, 'duplicate options'))
            continue

        answer = _resolve_answer(match.group(3), options)
        if answer is None:
            skipped.append(SkippedBlock(block, 'answer is not one of the options'))
            continue

        questions.append(ParsedQuestion(question_text, tuple(options), answer))

    return questions, skipped


def shuffle_options(question, rng=None):
    rng = rng or random
    options = list(question.options)
    rng.shuffle(options)
    return question._replace(options=tuple(options))


def pad_by_duplication(questions, count=QUIZ_SIZE, rng=None):
    """Bring ``questions`` to exactly ``count`` items.

    Extra questions are dropped from the end. Missing ones are filled with
    copies of randomly chosen questions, each with its options reshuffled.
    An empty input cannot be padded and raises ``QuizGenerationError``.
    """
    if not questions:
        raise QuizGenerationError("No questions could be generated from the provided content.")

    rng = rng or random
    padded = list(questions[:count])
    while len(padded) < count:
        padded.append(shuffle_options(rng.choice(questions), rng))
    return padded


def generate_quiz_from_text(text, count=QUIZ_SIZE, rng=None):
    if not text or not text.strip():
        raise ValueError("Text is empty.")

    rng = rng or random
    prompt = QUIZ_PROMPT_TEMPLATE.format(count=count, text=text.strip()[:MAX_SOURCE_CHARS])
    try:
        reply = ai_service.generate_text(prompt)
    except ai_service.AIServiceError as e:
        raise QuizGenerationError(f"Quiz generation failed: {e}") from e

    questions, skipped = parse_quiz_response(reply)
    for item in skipped:
        logger.debug("Skipped quiz block (%s): %r", item.reason, item.block[:80])
    logger.info("Parsed %d question(s) from AI reply, skipped %d block(s)", len(questions), len(skipped))

    if not questions:
        raise QuizGenerationError("AI did not return any usable questions.")

    questions = [shuffle_options(q, rng) for q in questions]
    return pad_by_duplication(questions, count, rng)


def build_flashcard_questions(flashcards, count=QUIZ_SIZE, rng=None):
    """Turn flashcards into multiple-choice questions without calling the AI."""
    cards = list(flashcards)
    if not cards:
        raise NoSourceDataError("No flashcards found for this topic.")

    rng = rng or random
    questions = []
    for card in cards[:count]:
        candidates = [d for d in DISTRACTOR_POOL if d != card.answer]
        options = [card.answer] + rng.sample(candidates, OPTIONS_PER_QUESTION - 1)
        rng.shuffle(options)
        questions.append(ParsedQuestion(card.question, tuple(options), card.answer))

    return pad_by_duplication(questions, count, rng)


def grade_submission(questions, answers):
    """Score ``answers`` against ``questions`` position by position.

    Comparison is exact string equality; no trimming or case folding.
    Returns ``(score, results)``.
    """
    questions = list(questions)
    if not isinstance(answers, (list, tuple)):
        raise ValueError("Invalid answers data.")
    if len(answers) != len(questions):
        raise ValueError(f"Expected {len(questions)} answers, got {len(answers)}.")

    score = 0
    results = []
    for question, answer in zip(questions, answers):
        if answer is not None and not isinstance(answer, str):
            raise ValueError("Each answer must be a string or null.")

        is_correct = answer == question.correct_answer
        if is_correct:
            score += 1
        results.append({
            'question': question.question_text,
            'options': list(question.options),
            'correct_answer': question.correct_answer,
            'user_answer': answer,
            'is_correct': is_correct,
        })

    return score, results
