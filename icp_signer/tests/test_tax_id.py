import pytest
from cryptography import x509

from icp_signer.app.services.tax_id import (
    TaxId,
    TaxIdKind,
    common_name_suffix,
    extract_tax_ids,
)

from icp_signer.tests.fixtures.pki_factory import (
    ICP_ENTITY_CNPJ,
    ICP_PERSON_DATA,
    ICP_RESPONSIBLE_DATA,
    make_identity,
    other_name,
    person_data,
)


def test_cpf_from_common_name_suffix():
    identity = make_identity("JOAO DA SILVA:12345678901")

    ids = extract_tax_ids(identity.leaf)

    assert ids.cpf == TaxId(TaxIdKind.CPF, "12345678901")
    assert ids.cpf.formatted == "123.456.789-01"
    assert ids.cnpj is None


def test_cnpj_from_common_name_suffix():
    identity = make_identity("EMPRESA EXEMPLO LTDA:12345678000199")

    ids = extract_tax_ids(identity.leaf)

    assert ids.cnpj.formatted == "12.345.678/0001-99"
    assert ids.cpf is None


def test_icp_brasil_other_names_take_precedence_over_common_name():
    identity = make_identity(
        "MARIA SOUZA:11111111111",
        san=[
            other_name(ICP_PERSON_DATA, person_data("98765432100")),
            other_name(ICP_ENTITY_CNPJ, "12345678000199"),
        ],
    )

    ids = extract_tax_ids(identity.leaf)

    assert ids.cpf.digits == "98765432100"
    assert ids.cnpj.digits == "12345678000199"


def test_responsible_person_field_yields_cpf():
    identity = make_identity(
        "EMPRESA EXEMPLO LTDA",
        san=[other_name(ICP_RESPONSIBLE_DATA, person_data("22233344405"))],
    )

    assert extract_tax_ids(identity.leaf).cpf.digits == "22233344405"


def test_zero_filled_field_is_not_informed():
    identity = make_identity(
        "JOAO DA SILVA:12345678901",
        san=[other_name(ICP_PERSON_DATA, person_data("00000000000"))],
    )

    # falls through to the Common Name suffix
    assert extract_tax_ids(identity.leaf).cpf.digits == "12345678901"


def test_isolated_digit_runs_in_san():
    identity = make_identity(
        "SEM DOCUMENTO",
        san=[x509.RFC822Name("12345678901@example.com.br")],
    )

    assert extract_tax_ids(identity.leaf).cpf.digits == "12345678901"


def test_digit_run_embedded_in_longer_number_is_ignored():
    identity = make_identity(
        "SEM DOCUMENTO",
        san=[x509.RFC822Name("1234567890123456@example.com.br")],
    )

    ids = extract_tax_ids(identity.leaf)

    assert ids.cpf is None
    assert ids.cnpj is None


def test_certificate_without_tax_id():
    identity = make_identity("Fulano de Tal")

    ids = extract_tax_ids(identity.leaf)

    assert ids.cpf is None
    assert ids.cnpj is None


def test_common_name_without_colon_is_not_a_tax_id():
    identity = make_identity("PROTOCOLO 12345678901")

    assert list(common_name_suffix(identity.leaf)) == []


def test_custom_chain_order():
    identity = make_identity(
        "MARIA SOUZA:11122233344",
        san=[other_name(ICP_PERSON_DATA, person_data("98765432100"))],
    )

    ids = extract_tax_ids(identity.leaf, chain=(common_name_suffix,))

    assert ids.cpf.digits == "11122233344"


@pytest.mark.parametrize(
    "kind, digits",
    [
        (TaxIdKind.CPF, "1234567890"),
        (TaxIdKind.CNPJ, "123456780001"),
        (TaxIdKind.CPF, "1234567890a"),
    ],
)
def test_tax_id_rejects_wrong_shape(kind, digits):
    with pytest.raises(ValueError):
        TaxId(kind, digits)
