import itertools

import pytest

from bibliodesk.catalog import Catalog
from bibliodesk.circulation import Circulation
from bibliodesk.config import settings
from bibliodesk.database import initialize_database
from bibliodesk.membership import Membership
from bibliodesk.policies import PolicyStore
from bibliodesk.users import Users
from bibliodesk.validators import CPFValidator

_cpf_bases = itertools.count(100000001)


def make_cpf(base: str = None) -> str:
    """Build a CPF with valid check digits from a 9-digit base."""
    base = base or str(next(_cpf_bases))
    first = CPFValidator.check_digit(base)
    second = CPFValidator.check_digit(base + str(first))
    return f"{base}{first}{second}"


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    # Minimum cost keeps password hashing out of the test runtime
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    path = str(tmp_path / f"test_{request.node.name}.db")
    initialize_database(path)
    return path


@pytest.fixture
def policies(db_file):
    return PolicyStore(db_file)


@pytest.fixture
def library(policies):
    return policies.create_library("Biblioteca Central", phone="(11) 3333-4444")


@pytest.fixture
def catalog(db_file):
    return Catalog(db_file)


@pytest.fixture
def membership(db_file):
    return Membership(db_file)


@pytest.fixture
def users(db_file):
    return Users(db_file)


@pytest.fixture
def circulation(db_file, policies):
    return Circulation(db_file, policies)


@pytest.fixture
def book(catalog):
    return catalog.create_book("Dom Casmurro", "Machado de Assis", "Romance")


@pytest.fixture
def copy(catalog, book):
    return catalog.create_copy(book.id, edition="1ª edição")


@pytest.fixture
def new_client(membership):
    counter = itertools.count(1)

    def factory(name: str = None, password: str = "segredo1"):
        n = next(counter)
        client, _ = membership.create_client(
            full_name=name or f"Leitor {n}",
            cpf=make_cpf(),
            phone="(11) 98888-7777",
            email=f"leitor{n}@example.com",
            password=password,
        )
        return client

    return factory


@pytest.fixture
def client_a(new_client):
    return new_client("Ana Souza")
