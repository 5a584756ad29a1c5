"""
Tests for text normalization and locator helpers.
"""

import pytest
from datetime import datetime, timezone
from bs4 import BeautifulSoup

from scrapers.utils.normalizers import (
    clean_text,
    parse_price,
    parse_integer,
    parse_decimal,
    normalize_property_type,
    extract_postal_code,
    extract_municipality,
    parse_time_on_market,
    detect_amenities,
    url_hash_id,
)
from scrapers.utils.extractors import first_of, first_text, first_attr, all_attrs, absolute_url, extract_listing_id


class TestParsePrice:

    @pytest.mark.parametrize("text, expected", [
        ("$1,200,000", 1200000),
        ("1 200 000 $", 1200000),
        ("549 900 $", 549900),
        ("549 900,00 $", 549900),
        ("$675,000.00", 675000),
        ("549000.0", 549000),
        ("549000.5", 549000),
        ("Asking: $399,900 CAD", 399900),
    ])
    def test_formats(self, text, expected):
        assert parse_price(text) == expected

    @pytest.mark.parametrize("text", [None, "", "Price on request"])
    def test_unparseable(self, text):
        assert parse_price(text) is None


class TestNumbers:

    def test_parse_integer(self):
        assert parse_integer("Built in 1985") == 1985
        assert parse_integer("2,500 sqft") == 2500
        assert parse_integer("3 + 1") == 3
        assert parse_integer("n/a") is None
        assert parse_integer(None) is None

    def test_parse_decimal(self):
        assert parse_decimal("1.5 storeys") == 1.5
        assert parse_decimal("2,5") == 2.5
        assert parse_decimal("none") is None

    def test_clean_text(self):
        assert clean_text("  a \n\t b  ") == "a b"
        assert clean_text(None) == ""


class TestPropertyType:

    @pytest.mark.parametrize("text, expected", [
        ("Semi-detached", "semi_detached"),
        ("Detached", "detached"),
        ("Condo/Apartment", "condo"),
        ("Apartment", "condo"),
        ("Single Family", "detached"),
        ("Row / Townhouse", "townhouse"),
        ("Duplex", "duplex"),
        ("Vacant land", "land"),
    ])
    def test_normalize(self, text, expected):
        assert normalize_property_type(text) == expected

    def test_unknown(self):
        assert normalize_property_type("Parking space") is None
        assert normalize_property_type(None) is None


class TestAddressParts:

    def test_postal_code(self):
        assert extract_postal_code("123 Rue Main, Montreal, QC h2x 1y4") == "H2X 1Y4"
        assert extract_postal_code("No code here") is None

    def test_municipality(self):
        assert extract_municipality("123 Rue Main, Montreal, QC H2X 1Y4") == "Montreal"
        assert extract_municipality("45 Boul. X, Saint-Laurent, Quebec") == "Saint-Laurent"
        assert extract_municipality("Toronto, ON") is None


class TestTimeOnMarket:
    NOW = datetime(2024, 6, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("text, days", [
        ("Time on REALTOR.ca: 3 days", 3),
        ("Time on REALTOR.ca: 2 weeks", 14),
        ("Time on REALTOR.ca: 1 month", 30),
        ("Time on REALTOR.ca: 50 hours", 2),
    ])
    def test_units(self, text, days):
        days_on_market, listed = parse_time_on_market(text, now=self.NOW)
        assert days_on_market == days
        assert (self.NOW - listed).days == days

    def test_absent(self):
        assert parse_time_on_market("Listed recently", now=self.NOW) == (None, None)


class TestAmenities:

    def test_keywords(self):
        flags = detect_amenities("Double garage, finished basement and central air")
        assert flags["has_garage"] is True
        assert flags["has_basement"] is True
        assert flags["has_ac"] is True
        assert flags["has_pool"] is False
        assert flags["has_fireplace"] is False

    def test_ac_never_false(self):
        assert detect_amenities("Nothing special")["has_ac"] is None

    def test_no_text(self):
        assert all(value is None for value in detect_amenities("").values())


class TestUrlHashId:

    def test_deterministic(self):
        url = "https://www.realtor.ca/real-estate/abc"
        assert url_hash_id(url) == url_hash_id(url)
        assert url_hash_id(url).startswith("URL")
        assert url_hash_id(url) != url_hash_id(url + "d")

    def test_known_value(self):
        # Same fold as the classic 31-multiplier string hash
        assert url_hash_id("a") == "URL97"
        assert url_hash_id("ab") == "URL3105"


class TestLocators:

    HTML = """
    <div class="card">
      <span class="price"></span>
      <span class="price-amount">$450,000</span>
      <a class="link" href="/real-estate/1234567/x">Go</a>
      <img class="photo" src="a.jpg"><img class="photo" src="b.jpg"><img class="photo" src="a.jpg">
    </div>
    """

    def setup_method(self):
        self.card = BeautifulSoup(self.HTML, "html.parser").select_one(".card")

    def test_first_text_skips_empty(self):
        assert first_text(self.card, [".missing", ".price", ".price-amount"]) == "$450,000"

    def test_first_attr(self):
        assert first_attr(self.card, ["a.nope", "a.link"], "href") == "/real-estate/1234567/x"

    def test_all_attrs_unique(self):
        assert all_attrs(self.card, ["img.photo"], "src") == ["a.jpg", "b.jpg"]

    def test_first_of_ignores_failing_strategy(self):
        def broken(node):
            raise AttributeError("boom")

        assert first_of(self.card, [broken, lambda node: None, lambda node: "found"]) == "found"

    def test_absolute_url(self):
        assert absolute_url("/a/b", "https://www.realtor.ca") == "https://www.realtor.ca/a/b"
        assert absolute_url("a/b", "https://www.realtor.ca/") == "https://www.realtor.ca/a/b"
        assert absolute_url("https://x.test/a", "https://www.realtor.ca") == "https://x.test/a"


class TestListingId:

    def _card(self, html):
        return BeautifulSoup(html, "html.parser").div

    def test_from_locator(self):
        card = self._card('<div><span class="mls">MLS® 27384910</span></div>')
        assert extract_listing_id(card, "https://www.realtor.ca/real-estate/x", [".mls"]) == "27384910"

    def test_from_card_attribute(self):
        card = self._card('<div data-listing-id="98765432"></div>')
        assert extract_listing_id(card, "https://www.realtor.ca/real-estate/x") == "98765432"

    def test_from_href(self):
        card = self._card('<div>no number</div>')
        assert extract_listing_id(card, "https://www.realtor.ca/real-estate/26001122/main-st") == "26001122"

    def test_from_text(self):
        card = self._card('<div>Great home - 7654321</div>')
        assert extract_listing_id(card, "https://www.realtor.ca/real-estate/main-st") == "7654321"

    def test_hash_fallback(self):
        url = "https://www.realtor.ca/real-estate/main-st"
        card = self._card('<div>Nothing here</div>')
        assert extract_listing_id(card, url) == url_hash_id(url)
