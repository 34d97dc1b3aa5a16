"""
Every job and queue name lives here; always enqueue through these constants.

Jobs sharing a queue share its creation-time options, and the first job registered on a
queue (see `load_jobs` ordering) supplies them. Jobs that need different queue options
go on their own queue.
"""

from __future__ import annotations


class QueueNames:
    EMAILS = "emails"
    SEARCH = "search"
    RECIPES = "recipes"


class JobNames:
    # emails
    SEND_VERIFICATION_EMAIL = "send-verification-email"
    SEND_PASSWORD_RESET_EMAIL = "send-password-reset-email"
    SEND_CONTACT_FORM = "send-contact-form"

    # recipes
    REGISTER_RECIPE_VISIT = "register-recipe-visit"

    # search
    REINDEX_RECIPES = "reindex-recipes"
