"""Tests for device identity resolution."""
from unittest.mock import patch

import pytest

from config import SubprocessError
from discovery.identity import (
    BannerStrategy,
    DHCPLeaseStrategy,
    HostnameStrategy,
    IdentityCache,
    IdentityResolver,
    MDNSStrategy,
    NetBIOSStrategy,
    SNMPStrategy,
    UPnPStrategy,
    VendorBehaviorStrategy,
    clean_device_name,
    default_strategies,
    fallback_name,
    is_valid_device_name,
    name_from_ssh_banner,
    parse_leases,
    parse_node_status,
    parse_ssdp_headers,
    reverse_pointer,
    server_product,
)
from discovery.vendors import OUIDatabase
from tests.mocks import FakeStrategy

IP = "192.168.1.40"
MAC = "3C:22:FB:11:22:33"


class TestNameRules:
    """Tests for validation, cleaning and fallback names."""

    @pytest.mark.parametrize("name,valid", [
        ("Johns", True),
        ("Living Room Tv", True),
        ("", False),
        (None, False),
        ("x", False),
        ("192.168.1.40", False),
        ("12345", False),
        ("192 168 1 5", False),
        ("10-0-0-7", False),
        ("Printer 2", True),
        ("Unknown Device", False),
    ])
    def test_is_valid_device_name(self, name, valid):
        assert is_valid_device_name(name) is valid

    @pytest.mark.parametrize("raw,expected", [
        ("johns-iphone.local", "Johns"),
        ("living_room_tv.lan", "Living Room Tv"),
        ("android-kitchen-tablet", "Kitchen Tablet"),
        ("NAS.", "Nas"),
        ("iphone", "iphone"),
    ])
    def test_clean_device_name(self, raw, expected):
        assert clean_device_name(raw) == expected

    def test_fallback_uses_detailed_vendor(self):
        assert fallback_name("00:1B:63:11:22:33", IP) == "Apple iPhone (40)"

    @pytest.mark.parametrize("ip,expected", [
        ("192.168.1.1", "Router/Gateway (1)"),
        ("192.168.1.254", "Router/Gateway (254)"),
        ("192.168.1.77", "Network Device (77)"),
    ])
    def test_fallback_without_vendor(self, ip, expected):
        assert fallback_name("02:00:00:00:00:01", ip) == expected

    def test_reverse_pointer(self):
        assert reverse_pointer(IP) == "40.1.168.192.in-addr.arpa"

    def test_isp_reverse_name_is_rejected(self):
        strategy = FakeStrategy("hostname", {IP: "192-168-1-40.isp.example.net"})
        assert strategy.try_resolve(MAC, IP) == (None, False)


class TestIdentityResolver:
    """Tests for the strategy chain and the cache."""

    def test_first_success_short_circuits(self):
        first = FakeStrategy("hostname")
        second = FakeStrategy("mdns", {IP: "living-room-tv.local"})
        third = FakeStrategy("snmp", {IP: "core-switch"})
        resolver = IdentityResolver([first, second, third])

        assert resolver.resolve_with_source(MAC, IP) == ("Living Room Tv", "mdns")
        assert first.lookups == 1
        assert third.lookups == 0

    def test_cache_hit_skips_strategies(self):
        strategy = FakeStrategy("hostname", {IP: "nas"})
        resolver = IdentityResolver([strategy])
        resolver.resolve(MAC, IP)

        assert resolver.resolve_with_source(MAC, IP) == ("Nas", "cache")
        assert strategy.lookups == 1

    def test_cache_is_keyed_by_mac_and_ip(self):
        strategy = FakeStrategy("hostname", {IP: "nas"})
        resolver = IdentityResolver([strategy])
        resolver.resolve(MAC, IP)
        resolver.resolve("AA:AA:AA:AA:AA:AA", IP)
        assert strategy.lookups == 2

    def test_invalid_names_fall_through(self):
        resolver = IdentityResolver([
            FakeStrategy("hostname", {IP: IP}),
            FakeStrategy("mdns", {IP: "unknown-host"}),
            FakeStrategy("dhcp", {IP: "printer"}),
        ])
        assert resolver.resolve_with_source(MAC, IP) == ("Printer", "dhcp")

    def test_failing_strategy_is_skipped(self):
        resolver = IdentityResolver([
            FakeStrategy("hostname", error=SubprocessError("nslookup missing")),
            FakeStrategy("upnp", error=OSError("network unreachable")),
            FakeStrategy("banner", {IP: "Ubuntu SSH Host"}),
        ])
        assert resolver.resolve_with_source(MAC, IP) == ("Ubuntu Ssh Host", "banner")

    def test_fallback_when_all_fail(self):
        resolver = IdentityResolver([FakeStrategy("hostname"), FakeStrategy("mdns")])
        assert resolver.resolve_with_source("02:00:00:00:00:01", "192.168.1.1") == (
            "Router/Gateway (1)", "fallback",
        )
        assert resolver.resolve_with_source("02:00:00:00:00:01", "192.168.1.1")[1] == "cache"

    def test_shared_cache(self):
        cache = IdentityCache()
        resolver = IdentityResolver([FakeStrategy("hostname", {IP: "nas"})], cache=cache)
        resolver.resolve(MAC, IP)
        assert cache.get(MAC, IP) == "Nas"
        cache.clear()
        assert len(cache) == 0

    def test_default_chain_order(self):
        names = [s.name for s in default_strategies(OUIDatabase(paths=[]))]
        assert names == ["hostname", "mdns", "snmp", "upnp", "dhcp", "vendor", "netbios", "banner"]


class TestIdentityCache:
    """Tests for IdentityCache."""

    def test_put_get_discard(self):
        cache = IdentityCache()
        cache.put(MAC, IP, "Nas")
        assert cache.get(MAC, IP) == "Nas"
        cache.discard(MAC, IP)
        assert cache.get(MAC, IP) is None

    def test_missing_mac_key(self):
        cache = IdentityCache()
        cache.put(None, IP, "Printer")
        assert cache.get("", IP) == "Printer"


class TestStrategies:
    """Tests for the concrete strategies with their tools mocked."""

    def test_hostname_from_nslookup(self):
        output = "40.1.168.192.in-addr.arpa\tname = johns-iphone.lan.\n"
        with patch("discovery.identity.run_command", return_value=output) as run:
            assert HostnameStrategy(windows=False).try_resolve(MAC, IP) == ("Johns", True)
        run.assert_called_once()
        assert run.call_args[0][0] == ["nslookup", IP]

    def test_hostname_falls_back_to_host(self):
        def fake_run(cmd, timeout=None):
            if cmd[0] == "host":
                return "40.1.168.192.in-addr.arpa domain name pointer office-printer.home.\n"
            return None

        with patch("discovery.identity.run_command", side_effect=fake_run):
            assert HostnameStrategy(windows=False).try_resolve(MAC, IP) == ("Office Printer", True)

    def test_hostname_all_tools_fail(self):
        with patch("discovery.identity.run_command", return_value=None), \
                patch.object(HostnameStrategy, "_gethostbyaddr", return_value=None):
            assert HostnameStrategy(windows=False).try_resolve(MAC, IP) == (None, False)

    def test_mdns_reads_partial_dns_sd_output(self):
        partial = "Timestamp A/R Flags if Name Type Class Rdata\n" \
                  "10:00:00.000 Add 2 4 40.1.168.192.in-addr.arpa. PTR IN Living-Room-TV.local.\n"
        error = SubprocessError("timed out", command=["dns-sd"], stdout=partial, details={"timeout": 2.0})
        with patch("discovery.identity.safe_run", side_effect=error):
            assert MDNSStrategy().try_resolve(MAC, IP) == ("Living Room Tv", True)

    def test_mdns_avahi(self):
        with patch("discovery.identity.safe_run", side_effect=SubprocessError("not found")), \
                patch("discovery.identity.run_command", return_value=f"{IP}\tgarage-pi.local\n"):
            assert MDNSStrategy().try_resolve(MAC, IP) == ("Garage Pi", True)

    def test_snmp_sysname(self):
        output = 'SNMPv2-MIB::sysName.0 = STRING: "core-switch"\n'
        with patch("discovery.identity.run_command", return_value=output) as run:
            assert SNMPStrategy().try_resolve(MAC, IP) == ("Core Switch", True)
        assert "public" in run.call_args[0][0]

    @pytest.mark.parametrize("windows,tool", [(True, "nbtstat"), (False, "nmblookup")])
    def test_netbios_node_status(self, windows, tool):
        output = "    DESKTOP-ABC    <00>  UNIQUE      Registered\n"
        with patch("discovery.identity.run_command", return_value=output) as run:
            assert NetBIOSStrategy(windows=windows).try_resolve(MAC, IP) == ("Desktop Abc", True)
        assert run.call_args[0][0] == [tool, "-A", IP]

    def test_netbios_tool_missing(self):
        with patch("discovery.identity.run_command", return_value=None):
            assert NetBIOSStrategy(windows=False).try_resolve(MAC, IP) == (None, False)

    def test_upnp_friendly_name(self):
        strategy = UPnPStrategy()
        headers = {"location": "http://192.168.1.40:49152/desc.xml", "server": "Linux UPnP/1.0 Sonos/63.2"}
        with patch.object(strategy, "search", return_value=headers), \
                patch.object(strategy, "fetch_friendly_name", return_value="living room speaker"):
            assert strategy.try_resolve(MAC, IP) == ("Living Room Speaker", True)

    def test_upnp_server_product(self):
        strategy = UPnPStrategy()
        with patch.object(strategy, "search", return_value={"server": "Linux/3.14 UPnP/1.0 MiniUPnPd/1.9"}):
            assert strategy.try_resolve(MAC, IP) == ("Miniupnpd", True)

    def test_upnp_no_reply(self):
        strategy = UPnPStrategy()
        with patch.object(strategy, "search", return_value=None):
            assert strategy.try_resolve(MAC, IP) == (None, False)

    def test_dhcp_leases(self, temp_data_dir):
        lease_file = temp_data_dir / "dnsmasq.leases"
        lease_file.write_text(f"1700000000 3c:22:fb:11:22:33 {IP} studio-imac 01:3c:22:fb:11:22:33\n")
        strategy = DHCPLeaseStrategy(lease_files=[lease_file, temp_data_dir / "missing.leases"])
        assert strategy.try_resolve(MAC, "192.168.1.99") == ("Studio Imac", True)

    def test_vendor_builtin_oui(self):
        strategy = VendorBehaviorStrategy(OUIDatabase(paths=[]))
        assert strategy.try_resolve("B8:27:EB:00:00:30", "192.168.1.30") == ("Raspberry Pi (30)", True)

    def test_vendor_unknown_with_ssh(self):
        strategy = VendorBehaviorStrategy(OUIDatabase(paths=[]))
        with patch.object(strategy, "port_open", side_effect=lambda ip, port: port == 22):
            assert strategy.try_resolve("02:00:00:00:00:01", "192.168.1.30") == ("Linux Device (30)", True)

    def test_vendor_gateway_octet(self):
        strategy = VendorBehaviorStrategy(OUIDatabase(paths=[]))
        with patch.object(strategy, "port_open", return_value=False):
            assert strategy.try_resolve("02:00:00:00:00:01", "192.168.1.254") == ("Router/Gateway (254)", True)
            assert strategy.try_resolve("02:00:00:00:00:01", "192.168.1.77") == (None, False)

    def test_banner_ssh(self):
        strategy = BannerStrategy()
        with patch.object(strategy, "read_ssh_banner", return_value="SSH-2.0-OpenSSH_8.9p1 Ubuntu-3ubuntu0.1"):
            assert strategy.try_resolve(MAC, IP) == ("Ubuntu SSH Host", True)

    def test_banner_http_server(self):
        strategy = BannerStrategy()
        with patch.object(strategy, "read_ssh_banner", return_value=None), \
                patch.object(strategy, "read_http_server", return_value="lighttpd/1.4.59"):
            assert strategy.try_resolve(MAC, IP) == ("lighttpd HTTP Host", True)


class TestParsers:
    """Tests for the response parsers used by the strategies."""

    def test_parse_isc_leases(self):
        content = (
            'lease 192.168.1.40 {\n'
            '  hardware ethernet 3c:22:fb:11:22:33;\n'
            '  client-hostname "studio-imac";\n'
            '}\n'
            'lease 192.168.1.41 {\n'
            '  hardware ethernet 3c:22:fb:11:22:34;\n'
            '}\n'
        )
        assert parse_leases(content) == [("3C:22:FB:11:22:33", "192.168.1.40", "studio-imac")]

    def test_parse_dnsmasq_leases_skips_anonymous(self):
        content = "1700000000 aa:bb:cc:dd:ee:ff 192.168.1.41 * *\n"
        assert parse_leases(content) == []

    def test_parse_ssdp_headers(self):
        payload = "HTTP/1.1 200 OK\r\nLOCATION: http://192.168.1.40:80/d.xml\r\nSERVER: Linux UPnP/1.0 Hue/1.0\r\n\r\n"
        headers = parse_ssdp_headers(payload)
        assert headers["location"] == "http://192.168.1.40:80/d.xml"
        assert headers["server"] == "Linux UPnP/1.0 Hue/1.0"

    @pytest.mark.parametrize("server,expected", [
        ("Linux/3.14 UPnP/1.0 MiniUPnPd/1.9", "MiniUPnPd"),
        ("UPnP/1.0", None),
        ("", None),
    ])
    def test_server_product(self, server, expected):
        assert server_product(server) == expected

    @pytest.mark.parametrize("banner,expected", [
        ("SSH-2.0-OpenSSH_8.9p1 Ubuntu-3ubuntu0.1", "Ubuntu SSH Host"),
        ("SSH-2.0-OpenSSH_9.2p1 Debian-2", "Debian SSH Host"),
        ("SSH-2.0-dropbear_2020.81", "Dropbear SSH Host"),
        ("HTTP/1.1 400 Bad Request", None),
    ])
    def test_name_from_ssh_banner(self, banner, expected):
        assert name_from_ssh_banner(banner) == expected

    def test_parse_nbtstat_output(self):
        output = (
            "           NetBIOS Remote Machine Name Table\n\n"
            "       Name               Type         Status\n"
            "    ---------------------------------------------\n"
            "    WORKGROUP      <00>  GROUP       Registered\n"
            "    DESKTOP-ABC    <00>  UNIQUE      Registered\n"
        )
        assert parse_node_status(output) == "DESKTOP-ABC"

    def test_parse_nmblookup_output(self):
        output = (
            f"Looking up status of {IP}\n"
            "\tWORKGROUP       <00> - <GROUP> M <ACTIVE>\n"
            "\tGROUPWARE-PC    <20> -         M <ACTIVE>\n"
            "\tGROUPWARE-PC    <00> -         M <ACTIVE>\n"
            "\n\tMAC Address = 00-00-00-00-00-00\n"
        )
        assert parse_node_status(output) == "GROUPWARE-PC"

    def test_parse_node_status_without_names(self):
        assert parse_node_status(f"No reply from {IP}. There was no match\n") is None
