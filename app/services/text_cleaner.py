"""
Text cleaning for stored emails before parsing.

Bank alerts often arrive HTML-only, so parsers read the plain-text body when
there is one and a flattened HTML body otherwise.
"""

import re
from bs4 import BeautifulSoup


def html_to_text(raw_html: str) -> str:
    """
    Convert HTML email content to plain text.

    Args:
        raw_html: Raw HTML string from email body

    Returns:
        Plain text with normalized whitespace
    """
    if not raw_html:
        return ""

    soup = BeautifulSoup(raw_html, "html.parser")

    # Remove script, style, and head tags
    for tag in soup(['script', 'style', 'head', 'meta', 'link']):
        tag.decompose()

    # Convert <br> and </p> to newlines
    for br in soup.find_all('br'):
        br.replace_with('\n')
    for block in soup.find_all(['p', 'tr', 'div']):
        block.insert_after('\n')

    text = soup.get_text(separator=' ')

    text = re.sub(r'[ \t\xa0]+', ' ', text)  # Multiple spaces to single
    text = re.sub(r'\n\s*\n', '\n\n', text)  # Multiple newlines to double
    text = re.sub(r'\n{3,}', '\n\n', text)  # Max 2 newlines

    return text.strip()


def normalize_whitespace(value: str) -> str:
    return re.sub(r'\s+', ' ', value or '').strip()


def email_text(body_text: str, body_html: str = None) -> str:
    """Best plain-text view of an email body."""
    if body_text and body_text.strip():
        return body_text
    return html_to_text(body_html or "")
