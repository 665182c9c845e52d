# core/template_engine.py
"""
Campaign Template Engine
Renders tenant-authored subjects and bodies in a Jinja2 sandbox, sanitizes
the resulting HTML for email clients and derives the plain-text alternative.
"""

import re
import logging
from typing import Dict, List, Any
from dataclasses import dataclass, field
import html
import urllib.parse

from jinja2.sandbox import SandboxedEnvironment
from jinja2.exceptions import TemplateError, TemplateSyntaxError, SecurityError
from markupsafe import Markup
import bleach
from bleach.css_sanitizer import CSSSanitizer
import premailer
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


class TemplateRenderError(Exception):
    """A campaign template could not be rendered"""
    pass


@dataclass
class RenderedEmail:
    """Result of rendering one campaign variant for one recipient"""
    subject: str
    html: str
    text: str
    inline_css_applied: bool = False


class CampaignTemplateEngine:
    """
    Sandboxed template rendering for email campaigns

    Templates see `email` (the recipient address) and `campaign_name`.
    """

    EMAIL_SAFE_TAGS = {
        'p', 'br', 'strong', 'em', 'b', 'i', 'u', 's', 'sub', 'sup',
        'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
        'ul', 'ol', 'li', 'dl', 'dt', 'dd',
        'a', 'img', 'figure', 'figcaption',
        'table', 'thead', 'tbody', 'tfoot', 'tr', 'td', 'th', 'caption',
        'div', 'span', 'section', 'article', 'header', 'footer',
        'hr', 'blockquote', 'pre', 'code',
        'center', 'font',
    }

    EMAIL_SAFE_ATTRIBUTES = {
        '*': ['class', 'id', 'style', 'title', 'dir', 'lang'],
        'a': ['href', 'title', 'rel', 'target'],
        'img': ['src', 'alt', 'width', 'height', 'border', 'align', 'title'],
        'table': ['border', 'cellpadding', 'cellspacing', 'width', 'align', 'bgcolor'],
        'td': ['colspan', 'rowspan', 'width', 'height', 'align', 'valign', 'bgcolor'],
        'th': ['colspan', 'rowspan', 'width', 'height', 'align', 'valign', 'bgcolor'],
        'tr': ['align', 'valign', 'bgcolor'],
        'div': ['align'],
        'p': ['align'],
        'font': ['color', 'face', 'size'],
    }

    ALLOWED_CSS_PROPERTIES = [
        'color', 'background-color', 'background',
        'font-family', 'font-size', 'font-weight', 'font-style',
        'text-align', 'text-decoration', 'text-transform',
        'margin', 'margin-top', 'margin-bottom', 'margin-left', 'margin-right',
        'padding', 'padding-top', 'padding-bottom', 'padding-left', 'padding-right',
        'border', 'border-top', 'border-bottom', 'border-left', 'border-right',
        'border-color', 'border-style', 'border-width', 'border-radius',
        'width', 'height', 'max-width', 'min-width',
        'display', 'float', 'clear',
        'line-height', 'vertical-align',
    ]

    def __init__(self, enable_css_inlining: bool = True, max_template_size: int = 1024 * 1024):
        """
        Args:
            enable_css_inlining: Inline <style> blocks for email clients
            max_template_size: Maximum template size in bytes
        """
        self.enable_css_inlining = enable_css_inlining
        self.max_template_size = max_template_size

        # Bodies are HTML authored by the tenant, values inserted into them are escaped
        self.html_env = SandboxedEnvironment(autoescape=True, cache_size=100)
        self.html_env.filters['url_encode'] = urllib.parse.quote
        self.html_env.filters['email_safe'] = self._email_safe_filter

        # Subjects are header text, never HTML
        self.text_env = SandboxedEnvironment(autoescape=False, cache_size=100)

        self.css_sanitizer = CSSSanitizer(
            allowed_css_properties=self.ALLOWED_CSS_PROPERTIES,
            allowed_svg_properties=[],
        )
        self.html_cleaner = bleach.Cleaner(
            tags=self.EMAIL_SAFE_TAGS,
            attributes=self.EMAIL_SAFE_ATTRIBUTES,
            protocols={'http', 'https', 'mailto'},
            css_sanitizer=self.css_sanitizer,
            strip=True,
            strip_comments=True,
        )

    def render(self, subject: str, body: str, variables: Dict[str, Any]) -> RenderedEmail:
        """
        Render a subject/body pair for one recipient

        Args:
            subject: Subject template
            body: HTML body template
            variables: Template context, usually email and campaign_name

        Returns:
            RenderedEmail with sanitized HTML and a text alternative

        Raises:
            TemplateRenderError: syntax error, sandbox violation, oversized template
                or an expression that fails while rendering
        """
        for name, content in (('subject', subject), ('body', body)):
            if not content or not isinstance(content, str):
                raise TemplateRenderError(f"Template {name} must be a non-empty string")
            if len(content.encode('utf-8')) > self.max_template_size:
                raise TemplateRenderError(f"Template {name} exceeds {self.max_template_size} bytes")

        try:
            rendered_subject = self.text_env.from_string(subject).render(**variables)
            rendered_html = self.html_env.from_string(body).render(**variables)
        except SecurityError as e:
            raise TemplateRenderError(f"Template uses a forbidden construct: {e}") from e
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"Template syntax error on line {e.lineno}: {e.message}") from e
        except TemplateError as e:
            raise TemplateRenderError(f"Template rendering failed: {e}") from e
        except Exception as e:
            # Runtime errors inside expressions, such as {{ 1 / 0 }}
            raise TemplateRenderError(f"Template rendering failed: {type(e).__name__}: {e}") from e

        # Header values cannot span lines
        rendered_subject = ' '.join(rendered_subject.split())

        inline_applied = False
        if self.enable_css_inlining and '<style' in rendered_html.lower():
            rendered_html = self._inline_css(rendered_html)
            inline_applied = True

        clean_html = self.sanitize_html(rendered_html)
        return RenderedEmail(
            subject=rendered_subject,
            html=clean_html,
            text=self.html_to_text(clean_html),
            inline_css_applied=inline_applied,
        )

    def sanitize_html(self, html_content: str) -> str:
        """Strip tags, attributes and styles email clients should never see"""
        if not html_content:
            return ''
        return self.html_cleaner.clean(html_content).strip()

    def _inline_css(self, html_content: str) -> str:
        """
        Move <style> rules into style attributes for email client compatibility
        """
        try:
            p = premailer.Premailer(
                html_content,
                remove_classes=False,
                keep_style_tags=False,
                strip_important=False,
                allow_network=False,
                disable_validation=True,
            )
            return p.transform()
        except Exception as e:
            # premailer raises a mix of cssutils and lxml errors on malformed input
            logger.warning(f"CSS inlining failed: {str(e)}")
            return re.sub(r'<style[^>]*>.*?</style>', '', html_content, flags=re.IGNORECASE | re.DOTALL)

    def html_to_text(self, html_content: str) -> str:
        """
        Convert HTML to plain text with proper formatting for email
        """
        if not html_content:
            return ""

        soup = BeautifulSoup(html_content, 'html.parser')

        for br in soup.find_all('br'):
            br.replace_with('\n')

        for p in soup.find_all('p'):
            p.insert_after('\n\n')

        for header in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
            header.insert_before('\n')
            header.insert_after('\n')

        for li in soup.find_all('li'):
            li.insert_before('- ')
            li.insert_after('\n')

        for link in soup.find_all('a', href=True):
            link_text = link.get_text()
            href = link['href']
            if href != link_text:
                link.replace_with(f"{link_text} ({href})")

        text = soup.get_text()
        text = re.sub(r'[ \t]+', ' ', text)
        text = re.sub(r' *\n *', '\n', text)
        text = re.sub(r'\n{3,}', '\n\n', text)
        return text.strip()

    def _email_safe_filter(self, value: str) -> str:
        """Escape a value and keep its line breaks"""
        if not isinstance(value, str):
            value = str(value)
        return Markup(html.escape(value).replace('\n', '<br>'))

    def validate_template(self, template_content: str) -> List[Dict[str, Any]]:
        """
        Validate template syntax without rendering

        Returns:
            List of syntax errors, empty when the template compiles
        """
        try:
            self.html_env.from_string(template_content or '')
        except TemplateSyntaxError as e:
            return [{'line': e.lineno, 'message': e.message}]
        return []


def text_to_html(message: str) -> str:
    """Escape a plain-text message and turn newlines into <br> for an HTML part"""
    return html.escape(message or '').replace('\n', '<br>')


_engine = None


def get_template_engine() -> CampaignTemplateEngine:
    global _engine
    if _engine is None:
        _engine = CampaignTemplateEngine()
    return _engine
