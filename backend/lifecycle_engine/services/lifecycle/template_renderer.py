"""
Lifecycle Message Template Renderer

Substitutes {variable} placeholders in an SMS template.

Rules:
- Known variables are replaced; unknown {tokens} are left as-is so a typo
  is visible in the sent message log rather than silently dropped.
- A line whose placeholders all rendered empty is removed.
- A dangling "your " left by an empty variable ("your  to", "your !")
  is removed.
- Marketing messages get the opt-out footer appended.
"""
import re
from typing import Dict, List, Optional


PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
DANGLING_YOUR_RE = re.compile(r"\byour\s+(?=to |!|\.|,|\s*$)", re.IGNORECASE | re.MULTILINE)
MULTI_SPACE_RE = re.compile(r"[ \t]{2,}")

STOP_FOOTER = "Reply STOP to opt out."

TEMPLATE_VARIABLES = (
    "firstName",
    "serviceName",
    "vehicleInfo",
    "googleReviewLink",
    "yelpReviewLink",
    "businessName",
    "businessPhone",
    "businessHours",
    "reviewCount",
)

REVIEW_LINK_VARIABLES = ("googleReviewLink", "yelpReviewLink")

DEFAULTS = {
    "firstName": "there",
    "serviceName": "your service",
}


def template_variables(template: str) -> List[str]:
    """Placeholders referenced by a template, in order of first use."""
    seen = []
    for name in PLACEHOLDER_RE.findall(template or ""):
        if name not in seen:
            seen.append(name)
    return seen


def uses_review_links(template: str) -> bool:
    return any(v in REVIEW_LINK_VARIABLES for v in template_variables(template))


def render_template(
    template: str,
    variables: Dict[str, Optional[str]],
    append_footer: bool = True,
) -> str:
    """Render a lifecycle SMS body."""
    values = {}
    for name in TEMPLATE_VARIABLES:
        value = variables.get(name)
        if value is None or str(value).strip() == "":
            value = DEFAULTS.get(name, "")
        values[name] = str(value)

    lines = []
    for line in (template or "").splitlines():
        names = [n for n in PLACEHOLDER_RE.findall(line) if n in values]

        rendered = PLACEHOLDER_RE.sub(
            lambda m: values[m.group(1)] if m.group(1) in values else m.group(0),
            line,
        )

        if names and all(values[n] == "" for n in names):
            continue
        lines.append(rendered)

    message = "\n".join(lines)
    message = DANGLING_YOUR_RE.sub("", message)
    message = MULTI_SPACE_RE.sub(" ", message)
    message = "\n".join(line.rstrip() for line in message.splitlines()).strip()

    if append_footer and STOP_FOOTER.lower() not in message.lower():
        message = f"{message}\n\n{STOP_FOOTER}" if message else STOP_FOOTER

    return message
