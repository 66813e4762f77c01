import pytest

from newsletter_service.domain import (
    NewSubscriber,
    SubscriberEmail,
    SubscriberEmailError,
    SubscriberName,
    SubscriberNameError,
)


def test_valid_email_is_accepted():
    email = SubscriberEmail.parse("ursula_le_guin@example.com")
    assert str(email) == "ursula_le_guin@example.com"


@pytest.mark.parametrize("raw", ["", "ursuladomain.com", "@domain.com", "ursula@", "a b@example.com"])
def test_invalid_emails_are_rejected(raw):
    with pytest.raises(SubscriberEmailError):
        SubscriberEmail.parse(raw)


def test_name_of_max_length_is_accepted():
    assert SubscriberName.parse("a" * 256).value == "a" * 256


def test_name_longer_than_max_length_is_rejected():
    with pytest.raises(SubscriberNameError):
        SubscriberName.parse("a" * 257)


@pytest.mark.parametrize("raw", ["", " ", "\t\n"])
def test_empty_or_whitespace_names_are_rejected(raw):
    with pytest.raises(SubscriberNameError):
        SubscriberName.parse(raw)


@pytest.mark.parametrize("ch", list('/()"<>\\{}'))
def test_names_with_forbidden_characters_are_rejected(ch):
    with pytest.raises(SubscriberNameError):
        SubscriberName.parse(f"Ursula{ch}")


def test_new_subscriber_parses_both_fields():
    subscriber = NewSubscriber.parse("ursula@example.com", "Ursula Le Guin")
    assert subscriber.email.value == "ursula@example.com"
    assert subscriber.name.value == "Ursula Le Guin"


def test_validation_errors_are_value_errors():
    with pytest.raises(ValueError):
        NewSubscriber.parse("not-an-email", "Ursula")
