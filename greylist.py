#!/usr/bin/python3
import collections
import configparser
import ipaddress
import logging
import math

import store
import whitelist

# CONFIGURATION

# Use a config file (-c) instead of changing the defaults here, to make your
# own life easier on updates. All options live in the DEFAULT section.

Config = collections.namedtuple("Config", [
    "store_backend",
    "store_server",
    "store_timeout",
    "whitelist_file",
    "greylist_time",
    "record_time",
    "reputation_threshold",
])

DEFAULT_CONFIG = Config(
    store_backend="memcached",
    store_server="127.0.0.1:11211",
    store_timeout=1.0,
    whitelist_file="/etc/spamassassin/grey_whitelist",
    greylist_time=300,
    record_time=60*60*24*14,
    reputation_threshold=5,
)

# END OF CONFIGURATION

STORE_BACKENDS = {"memcached", "redis"}

REASON_NOT_SPAM = "message seems not to be spam, skipped"
REASON_REPUTABLE = "server is reputable, skipped"
REASON_STORE_UNAVAILABLE = "greylist store unavailable, skipped"
REASON_NOT_EXPIRED = "Time has not yet expired."
REASON_ELAPSED = "Greylist time elapsed"
REASON_MALFORMED = "malformed request, skipped"

Signals = collections.namedtuple("Signals", [
    "is_first_contact",
    "sender",
    "host",
    "host_name",
    "score",
    "required_score",
])

Decision = collections.namedtuple("Decision", ["value", "reason"])

logger = logging.getLogger("greylist")


def getpositive(config, section, option, fallback, type_=int):
    try:
        v = config.get(section, option)
    except configparser.NoOptionError:
        return fallback
    try:
        v = type_(v)
    except ValueError:
        raise ValueError("Invalid value for {}: {!r}".format(option, v))
    if v <= 0:
        raise ValueError("{} must be positive, got {}".format(option, v))
    return v


def load_config(f):
    config = configparser.ConfigParser()
    with f as f:
        config.read_file(f)

    store_backend = config.get(
        "DEFAULT", "store_backend",
        fallback=DEFAULT_CONFIG.store_backend).lower()
    if store_backend not in STORE_BACKENDS:
        raise ValueError("Invalid store_backend: {}".format(store_backend))

    store_server = config.get(
        "DEFAULT", "store_server",
        fallback=DEFAULT_CONFIG.store_server)
    # fail now rather than on the first message
    store.parse_server(store_server)

    reputation_threshold = config.get(
        "DEFAULT", "reputation_threshold",
        fallback=str(DEFAULT_CONFIG.reputation_threshold))
    try:
        reputation_threshold = int(reputation_threshold)
    except ValueError:
        raise ValueError("Invalid value for reputation_threshold: {!r}".format(
            reputation_threshold))
    if reputation_threshold < 0:
        raise ValueError("reputation_threshold must not be negative")

    return Config(
        store_backend=store_backend,
        store_server=store_server,
        store_timeout=getpositive(
            config, "DEFAULT", "store_timeout",
            fallback=DEFAULT_CONFIG.store_timeout,
            type_=float),
        whitelist_file=config.get(
            "DEFAULT", "whitelist_file",
            fallback=DEFAULT_CONFIG.whitelist_file),
        greylist_time=getpositive(
            config, "DEFAULT", "greylist_time",
            fallback=DEFAULT_CONFIG.greylist_time),
        record_time=getpositive(
            config, "DEFAULT", "record_time",
            fallback=DEFAULT_CONFIG.record_time),
        reputation_threshold=reputation_threshold,
    )


class DecisionEngine:
    """
    Decide whether a message should be greylisted.

    The engine itself holds no per-message state. The whitelist is only ever
    replaced as a whole (see :meth:`reload_whitelist`), so concurrent calls to
    :meth:`decide` see either the old or the new set.
    """

    def __init__(self, config, reputation, greylist,
                 whitelist_set=None):
        self.config = config
        self.reputation = reputation
        self.greylist = greylist
        if whitelist_set is None:
            whitelist_set = whitelist.WhitelistSet()
        self.whitelist = whitelist_set

    def reload_whitelist(self, path=None):
        if path is None:
            path = self.config.whitelist_file
        try:
            whitelist_set = whitelist.load_whitelist(path)
        except (OSError, ValueError):
            logger.exception("could not reload whitelist from %s, keeping"
                             " the current one", path)
            return False
        self.whitelist = whitelist_set
        return True

    def decide(self, signals):
        key = self.greylist.key(signals.sender, signals.host_name)
        logger.debug("message key: %r, score: %s, first contact: %s",
                     key, signals.score, signals.is_first_contact)
        if signals.is_first_contact:
            decision = self._first_contact(signals, key)
        else:
            decision = self._retry(signals, key)
        logger.debug("decision for %r: %s (%s)",
                     key, decision.value, decision.reason)
        return decision

    def _first_contact(self, signals, key):
        # only greylist if we're not sure about the message
        if signals.score < signals.required_score * 0.5:
            return Decision(0, REASON_NOT_SPAM)

        try:
            count = self.reputation.get_count(signals.host)
        except store.StoreError as err:
            # pass instead of reading the count as 0: a store that can't be
            # read can't take the greylist record either
            logger.warning("reputation lookup failed, not greylisting: %s",
                           err)
            return Decision(0, REASON_STORE_UNAVAILABLE)
        # per single IP on purpose
        if count > self.config.reputation_threshold:
            logger.info("%s is reputable (%d), skipping greylist",
                        signals.host, count)
            return Decision(0, REASON_REPUTABLE)

        entry = self.whitelist.match_host(signals.host_name)
        if entry is not None:
            logger.info("%s is in whitelist, skipping greylist",
                        signals.host_name)
            return Decision(0, "{} triggered".format(entry))

        try:
            ip = ipaddress.ip_address(signals.host)
        except ValueError:
            ip = None
        if ip is not None:
            entry = self.whitelist.match_ip(ip)
            if entry is not None:
                logger.info("%s is in whitelist, skipping greylist",
                            signals.host)
                return Decision(0, "{} triggered".format(entry))

        logger.info("message is new and not whitelisted, inserting greylist"
                    " record %r", key)
        try:
            self.greylist.begin_window(key, self.config.greylist_time)
        except store.StoreError as err:
            # without a record the retry would pass anyway; don't defer for
            # nothing
            logger.warning("could not insert greylist record: %s", err)
            return Decision(0, REASON_STORE_UNAVAILABLE)
        return Decision(1, "")

    def _retry(self, signals, key):
        try:
            active = self.greylist.is_active(key)
        except store.StoreError as err:
            logger.warning("greylist lookup failed, treating as expired: %s",
                           err)
            active = False

        if active:
            logger.info("record %r left, greylisting some more", key)
            return Decision(1, REASON_NOT_EXPIRED)

        logger.info("record %r expired, greylist done", key)
        # the server came back, so count it towards trusting it
        try:
            count = self.reputation.get_count(signals.host)
            self.reputation.record_success(signals.host, count,
                                           self.config.record_time)
        except store.StoreError as err:
            logger.warning("could not update reputation of %s: %s",
                           signals.host, err)
        return Decision(0, REASON_ELAPSED)


def read_request(instream):
    attrs = {}
    for line in map(str.strip, instream):
        if not line:
            break
        lhs, _, rhs = line.partition("=")
        if not _:
            raise ValueError("Input format violation")
        attrs[lhs] = rhs
    else:
        if not attrs:
            return None
    return attrs


def clean_request(attrs):
    attrs.setdefault("client_name", "")
    attrs.setdefault("is_new", "")
    # make sure that critical attributes are in place
    attrs["sender"]
    attrs["client_address"]
    attrs["score"]
    attrs["required_score"]


def signals_from_request(attrs):
    try:
        score = float(attrs["score"])
        required_score = float(attrs["required_score"])
    except ValueError as err:
        raise ValueError("Invalid score: {}".format(err))
    if not (math.isfinite(score) and math.isfinite(required_score)):
        raise ValueError("Invalid score: {} of {}".format(
            score, required_score))
    is_new = attrs.get("is_new", "").strip().lower()
    return Signals(
        is_first_contact=is_new not in {"", "0", "no", "false"},
        sender=attrs["sender"],
        host=attrs["client_address"],
        host_name=attrs.get("client_name", ""),
        score=score,
        required_score=required_score,
    )


def format_response(decision):
    # a reason must not break the line based framing
    reason = " ".join(decision.reason.splitlines())
    return "sagrey={}\nsagreyreason={}\n\n".format(decision.value, reason)


def serve(engine, instream, outstream):
    while True:
        try:
            request = read_request(instream)
            if request is None:
                break
            if not request:
                # ignore empty requests
                continue
            try:
                clean_request(request)
            except KeyError as err:
                raise ValueError("Missing critical attribute: {}".format(err))
            signals = signals_from_request(request)
        except ValueError as err:
            logger.error("Malformed request: %s", err)
            logger.warning("Returning pass response")
            outstream.write(format_response(Decision(0, REASON_MALFORMED)))
            outstream.flush()
            continue
        outstream.write(format_response(engine.decide(signals)))
        outstream.flush()


def main():
    import argparse
    import signal
    import sys

    parser = argparse.ArgumentParser(
        description="""Accept greylisting requests (sender, client address and
        name, spam score and required score, first contact flag) on stdin and
        answer with the greylisting decision and its reason."""
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        type=argparse.FileType("r"),
        metavar="FILE",
        help="Specify a config file to override defaults")
    parser.add_argument(
        "-v",
        dest="verbosity",
        action="count",
        default=0,
        help="Increase verbosity by one step")

    args = parser.parse_args()

    verbosity = {
        0: logging.ERROR,
        1: logging.WARNING,
        2: logging.INFO,
        3: logging.DEBUG
    }

    logging.basicConfig(
        level=verbosity.get(args.verbosity, logging.DEBUG),
        stream=sys.stderr)

    config = DEFAULT_CONFIG
    if args.config is not None:
        try:
            config = load_config(args.config)
        except (ValueError, configparser.Error) as err:
            logger.error("Invalid configuration: %s", err)
            sys.exit(1)

    backend = store.connect(config)
    engine = DecisionEngine(
        config,
        store.ReputationStore(backend),
        store.GreylistRecordStore(backend),
        whitelist.load_whitelist(config.whitelist_file))

    def reload_whitelist(signum, frame):
        logger.info("reloading whitelist from %s", config.whitelist_file)
        engine.reload_whitelist()

    signal.signal(signal.SIGHUP, reload_whitelist)

    try:
        serve(engine, sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
