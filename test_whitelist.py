import ipaddress
import os
import tempfile
import unittest

import whitelist

SAMPLE = """\
# postgrey style whitelist
192.168.1.0/24
10.1.2.3
172.16.5
10.20
2001:db8::/32
mail.example.com   # trailing comment
/^spam.*$/

this has spaces
300.1.2.3
"""


class TestParseWhitelist(unittest.TestCase):
    def setUp(self):
        with self.assertLogs("whitelist", level="WARNING") as cm:
            self.whitelist = whitelist.parse_whitelist(
                SAMPLE.splitlines(), source="sample")
        self.warnings = cm.output

    def test_classification(self):
        self.assertSequenceEqual(
            ["192.168.1.0/24", "10.1.2.3/32", "172.16.5.0/24",
             "10.20.0.0/24", "2001:db8::/32"],
            [str(entry) for entry in self.whitelist.ips])
        self.assertSequenceEqual(
            ["mail.example.com", "/^spam.*$/"],
            [str(entry) for entry in self.whitelist.hostnames])
        self.assertEqual(7, len(self.whitelist))

    def test_malformed_line_warns(self):
        self.assertEqual(1, len(self.warnings))
        self.assertIn("sample line 10", self.warnings[0])
        self.assertIn("doesn't look like a hostname", self.warnings[0])

    def test_ipv4_network(self):
        self.assertTrue(self.whitelist.matches_ip("192.168.1.5"))
        self.assertFalse(self.whitelist.matches_ip("192.168.2.5"))
        self.assertTrue(self.whitelist.matches_ip(
            ipaddress.ip_address("10.1.2.3")))
        self.assertFalse(self.whitelist.matches_ip("10.1.2.4"))

    def test_partial_ipv4_is_slash_24(self):
        self.assertEqual("172.16.5.0/24",
                         str(self.whitelist.match_ip("172.16.5.200")))
        self.assertEqual("10.20.0.0/24",
                         str(self.whitelist.match_ip("10.20.0.7")))
        self.assertIsNone(self.whitelist.match_ip("10.20.1.7"))

    def test_ipv6_network(self):
        self.assertTrue(self.whitelist.matches_ip("2001:db8::25"))
        self.assertFalse(self.whitelist.matches_ip("2001:db9::25"))

    def test_versions_do_not_mix(self):
        wl = whitelist.parse_whitelist(["::/0"])
        self.assertFalse(wl.matches_ip("192.168.1.5"))
        wl = whitelist.parse_whitelist(["0.0.0.0/0"])
        self.assertFalse(wl.matches_ip("2001:db8::1"))
        self.assertTrue(wl.matches_ip("192.168.1.5"))

    def test_unparseable_ip_never_matches(self):
        self.assertFalse(self.whitelist.matches_ip("mail.example.com"))
        self.assertFalse(self.whitelist.matches_ip(""))

    def test_literal_hostname_suffix(self):
        self.assertTrue(self.whitelist.matches_host("mail.example.com"))
        self.assertTrue(self.whitelist.matches_host("smtp1.mail.example.com"))
        self.assertTrue(self.whitelist.matches_host("SMTP1.Mail.Example.COM"))
        self.assertFalse(self.whitelist.matches_host("evilmail.example.com"))
        self.assertFalse(self.whitelist.matches_host("mail.example.com.evil"))

    def test_regex_hostname(self):
        self.assertEqual("/^spam.*$/",
                         str(self.whitelist.match_host("spammer.example.org")))
        self.assertTrue(self.whitelist.matches_host("SPAMHOST"))
        self.assertFalse(self.whitelist.matches_host("nospam.example.org"))

    def test_first_match_wins(self):
        wl = whitelist.parse_whitelist(["10.0.0.0/8", "10.1.0.0/16",
                                        "example.com", "/example/"])
        self.assertEqual("10.0.0.0/8", str(wl.match_ip("10.1.1.1")))
        self.assertEqual("example.com",
                         str(wl.match_host("mx.example.com")))

    def test_empty_hostname(self):
        self.assertFalse(self.whitelist.matches_host(""))

    def test_unconvertible_address_is_reported(self):
        with self.assertLogs("whitelist", level="INFO") as cm:
            wl = whitelist.parse_whitelist(["300.1.2.3", "10.0.0.0/40"])
        self.assertEqual(0, len(wl))
        self.assertEqual(2, len(cm.output))
        self.assertIn("dropping whitelist entry '300.1.2.3'", cm.output[0])

    def test_bad_regex_is_skipped(self):
        with self.assertLogs("whitelist", level="WARNING") as cm:
            wl = whitelist.parse_whitelist(["/foo(/", "example.com"])
        self.assertIn("invalid regular expression", cm.output[0])
        self.assertEqual(1, len(wl))


class TestMatches(unittest.TestCase):
    def test_dispatch(self):
        entry = whitelist.parse_line("192.0.2.0/24")
        self.assertIsInstance(entry, whitelist.IpNetwork)
        self.assertTrue(whitelist.matches(
            entry, ipaddress.ip_address("192.0.2.1")))

        entry = whitelist.parse_line("example.net")
        self.assertIsInstance(entry, whitelist.HostnamePattern)
        self.assertTrue(whitelist.matches(entry, "a.example.net"))

    def test_rejects_other_types(self):
        with self.assertRaises(TypeError):
            whitelist.matches("example.net", "example.net")


class TestLoadWhitelist(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def test_load(self):
        path = os.path.join(self.tmpdir.name, "grey_whitelist")
        with open(path, "w") as f:
            f.write(SAMPLE)
        with self.assertLogs("whitelist", level="INFO"):
            wl = whitelist.load_whitelist(path)
        self.assertEqual(5, len(wl.ips))
        self.assertEqual(2, len(wl.hostnames))

    def test_latin1_comment(self):
        path = os.path.join(self.tmpdir.name, "grey_whitelist")
        with open(path, "wb") as f:
            f.write(b"# maintained by J\xf6rg\n10.0.0.0/8\nexample.com\n")
        wl = whitelist.load_whitelist(path)
        self.assertEqual(["10.0.0.0/8"], [str(entry) for entry in wl.ips])
        self.assertEqual(["example.com"],
                         [str(entry) for entry in wl.hostnames])

    def test_undecodable_line_is_skipped(self):
        path = os.path.join(self.tmpdir.name, "grey_whitelist")
        with open(path, "wb") as f:
            f.write(b"10.0.0.0/8\nm\xfcller.example\nexample.com\n")
        with self.assertLogs("whitelist", level="WARNING") as cm:
            wl = whitelist.load_whitelist(path)
        self.assertIn("line 2: not valid UTF-8", cm.output[0])
        self.assertEqual(1, len(wl.ips))
        self.assertEqual(["example.com"],
                         [str(entry) for entry in wl.hostnames])

    def test_missing_file_warns(self):
        path = os.path.join(self.tmpdir.name, "missing")
        with self.assertLogs("whitelist", level="WARNING"):
            wl = whitelist.load_whitelist(path)
        self.assertEqual(0, len(wl))

    def test_missing_local_file_is_silent(self):
        path = os.path.join(self.tmpdir.name, "grey_whitelist.local")
        with self.assertRaises(AssertionError):
            with self.assertLogs("whitelist", level="WARNING"):
                whitelist.load_whitelist(path)
        self.assertEqual(0, len(whitelist.load_whitelist(path)))

    def tearDown(self):
        self.tmpdir.cleanup()
