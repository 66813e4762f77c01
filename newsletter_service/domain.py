# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Validated value types for subscribers."""

from __future__ import annotations

from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email

MAX_NAME_LENGTH = 256
FORBIDDEN_NAME_CHARACTERS = frozenset('/()"<>\\{}')


class SubscriberEmailError(ValueError):
    """Raised when a string is not a usable subscriber email address."""


class SubscriberNameError(ValueError):
    """Raised when a subscriber name is empty, too long or unsafe."""


@dataclass(frozen=True)
class SubscriberEmail:
    """An email address that passed syntax validation."""

    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberEmail:
        if not raw:
            raise SubscriberEmailError("Subscriber email cannot be empty")
        try:
            validate_email(raw, check_deliverability=False)
        except EmailNotValidError as exc:
            raise SubscriberEmailError(f"{raw} is not a valid subscriber email: {exc}") from exc
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SubscriberName:
    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberName:
        if not raw or not raw.strip():
            raise SubscriberNameError("Subscriber name cannot be empty")
        if len(raw) > MAX_NAME_LENGTH:
            raise SubscriberNameError(
                f"Subscriber name must be at most {MAX_NAME_LENGTH} characters"
            )
        if any(ch in FORBIDDEN_NAME_CHARACTERS for ch in raw):
            raise SubscriberNameError(f"{raw} contains forbidden characters")
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NewSubscriber:
    email: SubscriberEmail
    name: SubscriberName

    @classmethod
    def parse(cls, email: str, name: str) -> NewSubscriber:
        """Validate raw form values, raising the first validation error found."""
        return cls(SubscriberEmail.parse(email), SubscriberName.parse(name))
