"""
Evidence guard for the dispute judge.

Deterministic regex scan over party-supplied text (dispute description,
evidence, deliverables) before it is placed in the judge prompt. Hits do not
block judging; they are reported to the judge and surfaced as concerns so a
human reviewing the verdict sees them.
"""
import re
import unicodedata

INJECTION_PATTERNS = [
    r'ignore\s+(all\s+)?(previous|prior|above)\s+(instructions|rules|prompts)',
    r'disregard\s+(all\s+)?(previous|prior|the\s+above)',
    r'override\s+(the\s+)?(system|judge|verdict|ruling|rules)',
    r'you\s+are\s+now\s+',
    r'pretend\s+(you|to\s+be)',
    r'act\s+as\s+(if|a|an)\s+',
    r'system\s*prompt',
    r'jailbreak',
    r'(recommend|rule|return|output|set)\s+(a\s+)?(full_refund|agent_paid|partial_refund|split)\b',
    r'(must|should|always)\s+(rule|decide|side)\s+(for|with|in\s+favou?r\s+of)',
    r'refund_?percentage\s*[:=]\s*\d+',
    r'confidence\s*[:=]\s*\d+',
    r'(as|being)\s+an?\s+(ai|judge|arbiter|arbitrator|assistant)\b',
    r'</?(EVIDENCE|DELIVERABLES|DISPUTE)>',
    r'&lt;/?(EVIDENCE|DELIVERABLES|DISPUTE)&gt;',
    r'(忽略|无视|跳过).{0,10}(指令|规则|提示)',
    r'ignor(e[rz]?|iere[n]?|a[r]?)\s+(toutes?\s+|alle\s+|todas?\s+)?(les\s+|las?\s+)?(instructions?|anweisungen|instrucciones?)',
]

COMPILED_PATTERNS = [re.compile(p, re.IGNORECASE) for p in INJECTION_PATTERNS]

_ZERO_WIDTH = re.compile(r'[​‌‍⁠﻿­]')


def normalize(text: str) -> str:
    """Fold fullwidth/homoglyph forms and strip zero-width characters."""
    return _ZERO_WIDTH.sub('', unicodedata.normalize('NFKC', text or ''))


def scan(text: str) -> list:
    """Return the matched snippets (empty list when clean)."""
    text = normalize(text)
    hits = []
    for pattern in COMPILED_PATTERNS:
        match = pattern.search(text)
        if match:
            hits.append(match.group())
    return hits


def fence(tag: str, text: str) -> str:
    """Wrap party data in a delimiter it cannot close early."""
    safe = (text or '').replace(f'</{tag}>', f'&lt;/{tag}&gt;').replace(f'<{tag}>', f'&lt;{tag}&gt;')
    return f'<{tag}>\n{safe}\n</{tag}>'
