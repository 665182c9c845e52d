# SMTP reply classification based on RFC 5321 & RFC 3463
# Decides whether a failed campaign send is retried or logged as a failure

import re
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union
from enum import Enum


class ResponseCategory(Enum):
    """SMTP Response Categories based on RFC 5321"""
    SUCCESS = "success"
    TEMP_FAIL = "temp_fail"
    PERM_FAIL = "perm_fail"
    UNKNOWN = "unknown"


@dataclass
class SMTPResponseCode:
    """Classification of one SMTP reply code"""
    code: str
    category: ResponseCategory
    description: str
    enhanced_status: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return self.category == ResponseCategory.TEMP_FAIL


_S, _T, _P = ResponseCategory.SUCCESS, ResponseCategory.TEMP_FAIL, ResponseCategory.PERM_FAIL

# code: (category, description, enhanced status)
_CODE_TABLE = {
    '220': (_S, 'Service ready', '2.0.0'),
    '221': (_S, 'Service closing transmission channel', '2.0.0'),
    '235': (_S, 'Authentication succeeded', '2.7.0'),
    '250': (_S, 'Requested mail action okay, completed', '2.0.0'),
    '251': (_S, 'User not local; will forward', '2.1.5'),
    '354': (_S, 'Start mail input', '2.0.0'),

    '421': (_T, 'Service not available, closing transmission channel', '4.3.2'),
    '422': (_T, 'Mailbox full or temporarily over quota', '4.2.2'),
    '432': (_T, 'Recipient mailbox temporarily unavailable', '4.2.1'),
    '442': (_T, 'Connection dropped', '4.4.2'),
    '450': (_T, 'Mailbox unavailable (busy or temporarily blocked)', '4.2.0'),
    '451': (_T, 'Local error in processing', '4.3.0'),
    '452': (_T, 'Insufficient system storage', '4.3.1'),
    '454': (_T, 'Temporary authentication or TLS failure', '4.7.0'),

    '500': (_P, 'Syntax error, command unrecognized', '5.5.2'),
    '501': (_P, 'Syntax error in parameters or arguments', '5.5.4'),
    '503': (_P, 'Bad sequence of commands', '5.5.1'),
    '530': (_P, 'Authentication required', '5.7.0'),
    '534': (_P, 'Authentication mechanism is too weak', '5.7.9'),
    '535': (_P, 'Authentication credentials invalid', '5.7.8'),
    '550': (_P, 'Mailbox unavailable', '5.1.1'),
    '551': (_P, 'User not local', '5.1.6'),
    '552': (_P, 'Exceeded storage allocation', '5.2.2'),
    '553': (_P, 'Mailbox name not allowed', '5.1.3'),
    '554': (_P, 'Transaction failed', '5.3.0'),
    '571': (_P, 'Blocked due to spam policy', '5.7.1'),
}

SMTP_CODES: Dict[str, SMTPResponseCode] = {
    code: SMTPResponseCode(code, category, description, enhanced)
    for code, (category, description, enhanced) in _CODE_TABLE.items()
}

# Keyword groups checked in order against the reply text
_BOUNCE_KEYWORDS = (
    ('spam_policy', ('spam', 'blocked', 'blacklist', 'reputation')),
    ('mailbox_full', ('full', 'quota', 'storage')),
    ('invalid_recipient', ('not found', 'unknown', 'invalid', 'does not exist', 'no such user')),
    ('authentication', ('auth', 'login', 'credential', 'password')),
    ('policy_violation', ('policy', 'violation', 'prohibited', 'denied')),
)


class SMTPResponseAnalyzer:
    """Classifies SMTP replies for the campaign dispatcher"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        # Enhanced status code pattern (RFC 3463)
        self.enhanced_status_pattern = re.compile(r'\b([245])\.(\d{1,3})\.(\d{1,3})\b')

    def parse_response(self, smtp_response: str) -> Tuple[str, str, Optional[str]]:
        """
        Parse SMTP response line according to RFC 5321
        Returns: (response_code, message, enhanced_status_code)
        """
        if not smtp_response or len(smtp_response) < 3 or not smtp_response[:3].isdigit():
            return ('500', 'Invalid response format', None)

        response_code = smtp_response[:3]
        message = smtp_response[4:].strip() if len(smtp_response) > 4 else ''
        enhanced_match = self.enhanced_status_pattern.search(message)
        return (response_code, message, enhanced_match.group(0) if enhanced_match else None)

    def categorize_response(self, response_code: Optional[str]) -> SMTPResponseCode:
        """
        Categorize an SMTP reply code

        A missing code means the failure happened below the SMTP dialogue
        (refused connection, timeout, TLS error) and is treated as temporary.
        """
        if response_code is None:
            return SMTPResponseCode('', ResponseCategory.TEMP_FAIL, 'Connection-level failure')

        response_code = str(response_code)
        code_info = SMTP_CODES.get(response_code)
        if code_info:
            return code_info

        fallback = {
            '2': (ResponseCategory.SUCCESS, 'Unknown success code'),
            '3': (ResponseCategory.SUCCESS, 'Unknown intermediate code'),
            '4': (ResponseCategory.TEMP_FAIL, 'Unknown temporary failure'),
            '5': (ResponseCategory.PERM_FAIL, 'Unknown permanent failure'),
        }
        category, description = fallback.get(response_code[:1],
                                             (ResponseCategory.UNKNOWN, 'Invalid response code format'))
        return SMTPResponseCode(response_code, category, description)

    def should_retry(self, response_code: Optional[str], attempt_count: int, max_attempts: int) -> bool:
        """Temporary failures are retried until max_attempts sends have been made"""
        code_info = self.categorize_response(response_code)
        return code_info.is_temporary and attempt_count < max_attempts

    def get_retry_delay(self, attempt_count: int, base_delay: int = 60, max_delay: int = 900) -> int:
        """
        Exponential backoff: base_delay * 2^(attempt_count - 1), capped at max_delay
        """
        attempt_count = max(1, attempt_count)
        return int(min(base_delay * (2 ** (attempt_count - 1)), max_delay))

    def analyze_bounce_reason(self, response_code: Optional[str], message: str) -> Dict[str, Union[str, bool]]:
        """
        Analyze bounce reason for detailed categorization and reporting
        """
        code_info = self.categorize_response(response_code)
        message_lower = (message or '').lower()

        subcategory = 'unknown'
        for name, keywords in _BOUNCE_KEYWORDS:
            if any(keyword in message_lower for keyword in keywords):
                subcategory = name
                break

        if subcategory == 'unknown' and response_code is None:
            subcategory = 'connection'

        return {
            'category': code_info.category.value,
            'subcategory': subcategory,
            'is_temporary': code_info.is_temporary,
            'description': code_info.description,
        }
