#!/usr/bin/python3
import collections
import ipaddress
import logging
import re

# The whitelist format is the one postgrey uses for its client whitelist, so
# an existing postgrey_whitelist_clients file can be used as-is.

logger = logging.getLogger("whitelist")

RE_REGEX = re.compile(r"^/(\S+)/$")
RE_IPV4 = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}(?:/\d{1,2})?$")
RE_IPV4_PARTIAL = re.compile(r"^\d{1,3}\.\d{1,3}(?:\.\d{1,3})?$")
RE_IPV6 = re.compile(r"^\S*:\S*(?:/\d{1,3})?$")
RE_HOSTNAME = re.compile(r"^\S+$")


class IpNetwork(collections.namedtuple("IpNetwork", ["network", "text"])):
    def __str__(self):
        return str(self.network)


class HostnamePattern(collections.namedtuple("HostnamePattern",
                                             ["regex", "text"])):
    def __str__(self):
        return self.text


def matches(entry, value):
    """
    Test a single whitelist entry against a hostname (for
    :class:`HostnamePattern`) or an :mod:`ipaddress` address (for
    :class:`IpNetwork`).
    """
    if isinstance(entry, HostnamePattern):
        return entry.regex.search(value) is not None
    elif isinstance(entry, IpNetwork):
        return (value.version == entry.network.version
                and value in entry.network)
    raise TypeError("not a whitelist entry: {!r}".format(entry))


class WhitelistSet:
    def __init__(self, ips=(), hostnames=()):
        self.ips = tuple(ips)
        self.hostnames = tuple(hostnames)

    def __len__(self):
        return len(self.ips) + len(self.hostnames)

    def __repr__(self):
        return "<WhitelistSet ips={} hostnames={}>".format(
            len(self.ips), len(self.hostnames))

    def match_host(self, hostname):
        for entry in self.hostnames:
            if matches(entry, hostname):
                return entry
        return None

    def matches_host(self, hostname):
        return self.match_host(hostname) is not None

    def match_ip(self, ip):
        if not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            try:
                ip = ipaddress.ip_address(ip)
            except ValueError:
                return None
        for entry in self.ips:
            if matches(entry, ip):
                return entry
        return None

    def matches_ip(self, ip):
        return self.match_ip(ip) is not None


def _network(text, original=None):
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError as err:
        logger.info("dropping whitelist entry %r: %s",
                    original or text, err)
        return None


def parse_line(line):
    """
    Classify a single stripped, non-empty whitelist line.

    Returns an entry, ``None`` if the line looked like an address but did not
    convert, and raises :class:`ValueError` for lines which do not look like
    any kind of entry.
    """
    match = RE_REGEX.match(line)
    if match is not None:
        try:
            regex = re.compile(match.group(1), re.IGNORECASE)
        except re.error as err:
            raise ValueError("invalid regular expression: {}".format(err))
        return HostnamePattern(regex, line)

    if RE_IPV4.match(line):
        network = _network(line)
    elif RE_IPV4_PARTIAL.match(line):
        octets = line.split(".")
        octets += ["0"] * (4 - len(octets))
        network = _network("{}/24".format(".".join(octets)), line)
    elif RE_IPV6.match(line):
        network = _network(line)
    elif RE_HOSTNAME.match(line):
        regex = re.compile(r"(?:^|\.){}$".format(re.escape(line)),
                           re.IGNORECASE)
        return HostnamePattern(regex, line)
    else:
        raise ValueError("doesn't look like a hostname")

    if network is None:
        return None
    return IpNetwork(network, line)


def parse_whitelist(lines, source="<whitelist>"):
    ips = []
    hostnames = []
    for lineno, line in enumerate(lines, 1):
        line = line.partition("#")[0].strip()
        if not line:
            continue
        # load_whitelist decodes with errors="replace"
        if "\ufffd" in line:
            logger.warning("%s line %d: not valid UTF-8", source, lineno)
            continue
        try:
            entry = parse_line(line)
        except ValueError as err:
            logger.warning("%s line %d: %s", source, lineno, err)
            continue
        if isinstance(entry, IpNetwork):
            ips.append(entry)
        elif isinstance(entry, HostnamePattern):
            hostnames.append(entry)

    return WhitelistSet(ips, hostnames)


def load_whitelist(path):
    try:
        f = open(path, "r", encoding="utf-8", errors="replace")
    except OSError as err:
        # a missing .local file just means there are no local additions
        if not path.endswith(".local"):
            logger.warning("can't open %s: %s", path, err)
        return WhitelistSet()

    with f:
        whitelist = parse_whitelist(f, source=path)
    logger.info("loaded %d ip and %d hostname whitelist entries from %s",
                len(whitelist.ips), len(whitelist.hostnames), path)
    return whitelist
