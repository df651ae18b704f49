"""
adForge Reporting Module
========================

Text reports for plans, runs and answer keys, plus the JSON run summary.
"""

from .summary import (
    generate_plan_report,
    generate_run_report,
    generate_answer_key_report,
    write_run_summary,
)
