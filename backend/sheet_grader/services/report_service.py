from html import escape
from typing import Dict, List

from ..schemas import CorrectionLogOut, TestDefinition, TestResultOut
from .grading_service import UNANSWERED_LABEL, UNKNOWN_CORRECT_LABEL, find_correct_option


def _answer_rows(test: TestDefinition, answers: List[object], corrected_ids: set) -> str:
    by_question: Dict[str, object] = {answer.question_id: answer for answer in answers}
    rows: List[str] = []
    for idx, question in enumerate(test.questions):
        keys = {option.id: option.key for option in question.options}
        answer = by_question.get(question.id)
        selected_id = getattr(answer, "selected_option_id", None)
        is_correct = bool(getattr(answer, "is_correct", False))
        correct = find_correct_option(question)
        mark = " *" if question.id in corrected_ids else ""
        rows.append(
            f"""
            <tr class="{'ok' if is_correct else 'bad'}">
              <td>{idx + 1}</td>
              <td>{escape(question.content)}</td>
              <td>{escape(keys.get(selected_id, UNANSWERED_LABEL))}{mark}</td>
              <td>{escape(correct.key if correct else UNKNOWN_CORRECT_LABEL)}</td>
              <td>{'Correct' if is_correct else 'Wrong'}</td>
            </tr>
            """
        )
    return "".join(rows)


def _log_rows(logs: List[CorrectionLogOut]) -> str:
    if not logs:
        return "<div class='empty'>No manual corrections.</div>"
    items = []
    for log in logs:
        when = log.created_at.strftime("%Y-%m-%d %H:%M") if log.created_at else ""
        who = f" by {escape(log.corrected_by)}" if log.corrected_by else ""
        items.append(
            f"<li>{when}{who}: {escape(log.question_content or log.question_id)} "
            f"({escape(log.original_option_key or UNANSWERED_LABEL)} &rarr; {escape(log.new_option_key or '?')}) "
            f"<span class='reason'>{escape(log.reason)}</span></li>"
        )
    return "<ul class='logs'>" + "".join(items) + "</ul>"


def render_result_report_html(
    result: TestResultOut,
    test: TestDefinition,
    answers: List[object],
    logs: List[CorrectionLogOut],
) -> str:
    corrected_ids = {log.question_id for log in logs}
    return f"""
    <html>
    <head>
      <meta charset="utf-8" />
      <style>
        @page {{ size: A4; margin: 12mm; }}
        body {{ font-family: 'Segoe UI', sans-serif; color: #111; font-size: 9pt; }}
        .title {{ font-size: 12pt; font-weight: 600; }}
        .meta {{ font-size: 9pt; color: #444; }}
        table {{ width: 100%; border-collapse: collapse; margin-top: 8px; }}
        th, td {{ border: 1px solid #e5e7eb; padding: 3px 4px; text-align: left; }}
        tr.bad td:last-child {{ color: #dc2626; }}
        tr.ok td:last-child {{ color: #15803d; }}
        h2 {{ font-size: 10pt; margin-top: 12px; }}
        .logs {{ margin: 6px 0 0 18px; }}
        .reason {{ color: #444; }}
        .empty {{ color: #888; }}
      </style>
    </head>
    <body>
      <div class="header">
        <div class="title">{escape(test.title)}</div>
        <div class="meta">Student: {escape(result.student_name)}</div>
        <div class="meta">Score: {result.score} ({result.correct_count} correct / {result.error_count} wrong)</div>
        <div class="meta">Status: {escape(result.status)}</div>
      </div>
      <table>
        <tr><th>#</th><th>Question</th><th>Selected</th><th>Correct</th><th>Status</th></tr>
        {_answer_rows(test, answers, corrected_ids)}
      </table>
      <h2>Correction history</h2>
      {_log_rows(logs)}
    </body>
    </html>
    """


def export_result_pdf(html: str) -> bytes:
    from weasyprint import HTML

    return HTML(string=html).write_pdf()
