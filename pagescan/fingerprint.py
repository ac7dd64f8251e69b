from __future__ import annotations

import re

from pagescan.models import Artifact

TECHNOLOGY_SIGNATURES: dict[str, re.Pattern[str]] = {
    "Next.js": re.compile(r"/_next/static/"),
    "Nuxt": re.compile(r"/_nuxt/"),
    "Gatsby": re.compile(r"/page-data/|gatsby", re.I),
    "React": re.compile(r"react(-dom)?[.\-@/]", re.I),
    "Vue.js": re.compile(r"vue(\.runtime)?(\.min)?\.js|/vue@", re.I),
    "Angular": re.compile(r"angular(\.min)?\.js|/@angular/", re.I),
    "jQuery": re.compile(r"jquery[.\-@/]", re.I),
    "WordPress": re.compile(r"/wp-(content|includes)/"),
    "Google Analytics": re.compile(r"google-analytics\.com|googletagmanager\.com"),
    "Stripe.js": re.compile(r"js\.stripe\.com"),
}


def detect_technologies(resources: list[Artifact]) -> list[str]:
    found: list[str] = []
    for name, signature in TECHNOLOGY_SIGNATURES.items():
        if any(signature.search(resource.location) for resource in resources):
            found.append(name)
    return found
