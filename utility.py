#!/usr/bin/python3
import binascii
import configparser
import ipaddress
import random

import greylist
import store
import whitelist

_anon_dict = {}
_anon_rng = random.SystemRandom()

def anon_address(addr):
    try:
        return _anon_dict[addr]
    except KeyError:
        localpart, at, remotepart = addr.partition("@")
        randkey = binascii.b2a_hex(
            _anon_rng.getrandbits(48).to_bytes(6, 'little')).decode()
        _anon_dict[addr] = randkey+at+remotepart
        return _anon_dict[addr]

def show_whitelist(args):
    wl = whitelist.load_whitelist(args.config.whitelist_file)
    print("{:5s} {}".format("type", "entry"))
    for entry in wl.hostnames:
        print("{:5s} {}".format("host", entry))
    for entry in wl.ips:
        print("{:5s} {}".format("ip", entry))

def check_whitelist(args):
    wl = whitelist.load_whitelist(args.config.whitelist_file)
    for host in args.hosts:
        try:
            entry = wl.match_ip(ipaddress.ip_address(host))
        except ValueError:
            entry = wl.match_host(host)
        if entry is None:
            print("{}: not whitelisted".format(host))
        else:
            print("{}: {} triggered".format(host, entry))

def show_reputation(args):
    reputation = store.ReputationStore(store.connect(args.config))
    print("{:40s} {}".format("client address", "count"))
    for host in args.hosts:
        print("{:40s} {:d}".format(host, reputation.get_count(host)))

def show_greylist(args):
    backend = store.connect(args.config)
    records = store.GreylistRecordStore(backend)
    key = records.key(args.sender, args.client_name)
    print("sender: {} (from {})".format(
        args.anonymizer(args.sender), args.client_name or "unknown"))
    value = backend.get(key)
    if value is None:
        print("    no active greylist record")
    else:
        print("    active: {}".format(value))

def main():
    import argparse
    import logging
    import sys

    parser = argparse.ArgumentParser(
        description="""Inspect the greylisting whitelist and the records in the
        greylisting store"""
    )
    parser.add_argument(
        "-v",
        dest="verbosity",
        action="count",
        default=0,
        help="Increase verbosity by one step")
    parser.add_argument(
        "-c", "--config",
        default=None,
        type=argparse.FileType("r"),
        metavar="FILE",
        help="Specify a config file to override defaults")
    parser.add_argument(
        "--deanon",
        dest="anon",
        default=True,
        action="store_false",
        help="If set, email addresses will be shown in full, instead"
        " of anonymized")
    subcommands = parser.add_subparsers(
        title="Commands")
    subcommands.required = True

    cmd_show_whitelist = subcommands.add_parser("show-whitelist")
    cmd_show_whitelist.set_defaults(func=show_whitelist)

    cmd_check_whitelist = subcommands.add_parser("check-whitelist")
    cmd_check_whitelist.set_defaults(func=check_whitelist)
    cmd_check_whitelist.add_argument(
        "hosts",
        nargs="+",
        metavar="HOST",
        help="Client address or client name to look up")

    cmd_show_reputation = subcommands.add_parser("show-reputation")
    cmd_show_reputation.set_defaults(func=show_reputation)
    cmd_show_reputation.add_argument(
        "hosts",
        nargs="+",
        metavar="ADDRESS",
        help="Client address to show the reputation counter of")

    cmd_show_greylist = subcommands.add_parser("show-greylist")
    cmd_show_greylist.set_defaults(func=show_greylist)
    cmd_show_greylist.add_argument(
        "sender",
        metavar="SENDER")
    cmd_show_greylist.add_argument(
        "client_name",
        nargs="?",
        default="",
        metavar="CLIENTNAME",
        help="Reverse DNS name of the client, empty if it had none")

    args = parser.parse_args()
    if args.anon:
        args.anonymizer = anon_address
    else:
        args.anonymizer = lambda x: x

    verbosity = {
        0: logging.ERROR,
        1: logging.WARNING,
        2: logging.INFO,
        3: logging.DEBUG
    }

    logging.basicConfig(
        level=verbosity.get(args.verbosity, logging.DEBUG),
        stream=sys.stderr)

    if args.config:
        try:
            args.config = greylist.load_config(args.config)
        except (ValueError, configparser.Error) as err:
            parser.error(str(err))
    else:
        args.config = greylist.DEFAULT_CONFIG

    try:
        args.func(args)
    except store.StoreError as err:
        logging.getLogger("utility").error("%s", err)
        sys.exit(1)

if __name__ == "__main__":
    main()
