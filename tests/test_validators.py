import pytest

from bibliodesk.validators import CPFValidator, EmailValidator, TextValidator


@pytest.mark.parametrize("cpf", ["52998224725", "111.444.777-35", "123.456.789-09"])
def test_valid_cpf(cpf):
    assert CPFValidator.is_valid_cpf(cpf)


@pytest.mark.parametrize("cpf", ["52998224724", "1234567890", "111.111.111-11", "00000000000", "", None, "abc"])
def test_invalid_cpf(cpf):
    assert not CPFValidator.is_valid_cpf(cpf)


def test_normalize_cpf():
    assert CPFValidator.normalize_cpf(" 529.982.247-25 ") == "52998224725"


def test_email_validation():
    assert EmailValidator.is_valid_email("leitor@example.com")
    assert not EmailValidator.is_valid_email("leitor@example")
    assert not EmailValidator.is_valid_email("leitor example.com")
    assert EmailValidator.normalize_email("  Leitor@Example.COM ") == "leitor@example.com"


def test_text_validation():
    assert TextValidator.validate_name("Ana")
    assert not TextValidator.validate_name("  ")
    assert not TextValidator.validate_name("123")
    assert TextValidator.validate_phone("(11) 98888-7777")
    assert not TextValidator.validate_phone("1234")
    assert TextValidator.sanitize_text(" <b>Olá</b> ") == "Olá"
