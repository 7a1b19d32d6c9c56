import httpx
import pytest

from wafvisits.errors import WhoIsFailure
from wafvisits.observability.metrics import MetricsRegistry
from wafvisits.whois.client import WhoisClient, parse_whois_text

ARIN_TEXT = """\
#
# ARIN WHOIS data and services are subject to the Terms of Use
#

NetRange:       192.0.2.0 - 192.0.2.255
CIDR:           192.0.2.0/24
NetName:        PARENT-NET
Organization:   Upstream Carrier (UC-1)

OrgName:        Upstream Carrier
OrgId:          UC-1
Country:        US

NetRange:       192.0.2.0 - 192.0.2.127
NetName:        CUSTOMER-NET

OrgName:        Example Hosting, LLC
OrgId:          EH-42
Address:        100 Main Street
Address:        Suite 200
City:           Springfield
StateProv:      IL
PostalCode:     62701
Country:        US
Comment:        http://example.net/abuse

OrgTechHandle:  NOC-ARIN
OrgTechName:    Network Operations
OrgTechPhone:   +1-555-0100
OrgTechEmail:   noc@example.net
"""


def test_parse_prefers_most_specific_record():
    info = parse_whois_text(ARIN_TEXT)
    assert info["OrgName"] == "Example Hosting, LLC"
    assert info["NetName"] == "CUSTOMER-NET"
    assert info["Address"] == "100 Main Street, Suite 200"
    assert info["City"] == "Springfield"
    assert info["StateProv"] == "IL"
    assert info["OrgTechEmail"] == "noc@example.net"
    assert info["Comment"] == "http://example.net/abuse"
    assert "ARIN WHOIS data and services are subject to the Terms of Use" not in info.values()


def test_parse_empty_text():
    assert parse_whois_text("") == {}
    assert parse_whois_text("# only comments\n\n") == {}


def test_lookup_requests_full_text_view():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text=ARIN_TEXT)

    metrics = MetricsRegistry()
    with WhoisClient(base_url="https://whois.example/rest/ip/", metrics=metrics, transport=httpx.MockTransport(handler)) as client:
        info = client.lookup("192.0.2.10")

    assert str(seen[0].url) == "https://whois.example/rest/ip/192.0.2.10/pft.txt"
    assert info["OrgName"] == "Example Hosting, LLC"
    assert metrics.get("whois_lookups") == 1


def test_lookup_not_found_is_empty():
    client = WhoisClient(transport=httpx.MockTransport(lambda request: httpx.Response(404, text="No record found")))
    assert client.lookup("10.0.0.1") == {}
    client.close()


@pytest.mark.parametrize("status", [400, 500, 503])
def test_lookup_http_error_raises(status):
    client = WhoisClient(transport=httpx.MockTransport(lambda request: httpx.Response(status)))
    with pytest.raises(WhoIsFailure, match=str(status)):
        client.lookup("10.0.0.1")
    client.close()


def test_lookup_transport_error_raises():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = WhoisClient(transport=httpx.MockTransport(handler))
    with pytest.raises(WhoIsFailure) as excinfo:
        client.lookup("10.0.0.1")
    assert excinfo.value.ip == "10.0.0.1"
    client.close()
