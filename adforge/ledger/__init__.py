"""
adForge Ledger Module
=====================

The answer key: what was weakened, durably recorded.
"""

from .answer_key import AnswerKeyLedger, read_answer_key, grading_tuples
