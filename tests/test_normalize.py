from casamatch.domain.address import address_key, address_similarity, cache_key, is_generic_address
from casamatch.domain.classification import classify, infer_seller_type
from casamatch.domain.normalize import normalize_property_type
from casamatch.domain.parsing import to_price
from casamatch.domain.phone import normalize_phone
from casamatch.domain.types import Classification, SellerType


def test_normalize_phone_variants_collapse_to_one_key():
    expected = "393331234567"
    for raw in ("+39 333 123 4567", "0039 333 1234567", "333-123-4567", "(333) 1234567", "+39-333-1234567"):
        assert normalize_phone(raw) == expected


def test_normalize_phone_landline_and_garbage():
    assert normalize_phone("02 1234 5678") == "390212345678"
    assert normalize_phone("+44 20 7946 0958") == "442079460958"
    assert normalize_phone("12345") is None
    assert normalize_phone("") is None
    assert normalize_phone(None) is None


def test_cache_key_is_case_and_whitespace_insensitive():
    assert cache_key("  Via Roma 1 ", "MILANO") == "via roma 1, milano"
    assert cache_key("via roma 1", "milano") == cache_key("VIA ROMA 1", " Milano ")


def test_address_key_folds_abbreviations():
    assert address_key("Viale Monza 120", "Milano") == address_key("V.le Monza, 120", "milano")
    assert address_key("Via Paolo Sarpi 12", "Milano") == address_key("V. Paolo Sarpi, 12", "Milano")
    assert address_key("Corso Como 5", "Milano") != address_key("Corso Como 7", "Milano")


def test_generic_addresses():
    assert is_generic_address("Milano")
    assert is_generic_address("Via Roma")  # no house number
    assert is_generic_address("")
    assert not is_generic_address("Via Roma 1")


def test_address_similarity_is_fuzzy():
    assert address_similarity("Via Paolo Sarpi 12", "V. Paolo Sarpi, 12") > 0.9
    assert address_similarity("Via Paolo Sarpi 12", "Corso Buenos Aires 45") < 0.65


def test_property_type_normalization():
    assert normalize_property_type("Appartamento") == "apartment"
    assert normalize_property_type("Trilocale") == "apartment"
    assert normalize_property_type("flat") == "apartment"
    assert normalize_property_type("Attico") == "penthouse"
    assert normalize_property_type("Villa a schiera") == "house"
    assert normalize_property_type("Box auto") == "garage"
    assert normalize_property_type("castello") is None
    assert normalize_property_type(None) is None


def test_to_price_parses_italian_formatting():
    assert to_price("€ 315.000") == 315000
    assert to_price(420000) == 420000
    assert to_price("trattativa riservata") is None


def test_seller_inference_priority():
    assert infer_seller_type(agency_name="Sarpi Immobiliare") == SellerType.agency
    assert infer_seller_type(advertiser="privato", text="l'agenzia propone") == SellerType.private
    assert infer_seller_type(text="Vendita diretta, no agenzie") == SellerType.private
    assert infer_seller_type(text="Proponiamo in vendita trilocale") == SellerType.agency
    assert infer_seller_type(text="Trilocale luminoso") == SellerType.unknown
    assert infer_seller_type(agency_name="privato") == SellerType.unknown


def test_classification_by_agency_count():
    assert classify(SellerType.private, []) == Classification.private
    assert classify(SellerType.unknown, []) == Classification.unclassified
    assert classify(SellerType.agency, []) == Classification.single_agency
    assert classify(SellerType.agency, ["", "  "]) == Classification.single_agency
    assert classify(SellerType.agency, ["A"]) == Classification.single_agency
    assert classify(SellerType.agency, [f"A{i}" for i in range(6)]) == Classification.single_agency
    assert classify(SellerType.agency, [f"A{i}" for i in range(7)]) == Classification.multi_agency
    # case/whitespace duplicates count once
    assert classify(SellerType.agency, ["Casa Nord", "casa nord ", "CASA NORD"]) == Classification.single_agency
    assert classify(SellerType.agency, ["a", "b", "c"], multi_agency_min=3) == Classification.multi_agency
