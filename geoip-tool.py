# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

import argparse
import os
import sys

import geoip
import srs
from errors import GeoIPError
from ipinfo import IPinfoDownloader

def set_action_output(name, content):
    sys.stdout.write("::set-output name=" + name + "::" + content + "\n")

def load_input(input_file):
    try:
        contents = input_file.read()
    except OSError as err:
        sys.exit("Input file '%s' cannot be read: %s." % (input_file.name, err.strerror))
    input_file.close()
    return contents

def run_release(args):
    if args.input is not None:
        name = args.input.name
        source = load_input(args.input)
    else:
        name = "ipinfo country.mmdb"
        source = IPinfoDownloader(args.token).download()
    geoip.release(source, output=args.output, cn_output=args.cn_output,
                  rule_set_output=args.rule_set_output, extend=args.extend, name=name)
    set_action_output("tag", "ipinfo")

def run_dump(args):
    with geoip.open_source(load_input(args.infile), args.infile.name) as reader:
        for net, value in reader:
            print("%s %s" % (net, value), file=args.outfile)

def run_rule_set(args):
    try:
        rule_set = srs.read_rule_set(load_input(args.infile))
    except ValueError as err:
        sys.exit("Input file '%s' is not a valid rule-set: %s." % (args.infile.name, err))
    for rule in rule_set.rules:
        for cidr in rule.ip_cidr:
            print(cidr, file=args.outfile)

def main():
    parser = argparse.ArgumentParser(description="Tool for building sing-geoip databases and rule-sets from ipinfo data.")
    subparsers = parser.add_subparsers(title="valid subcommands", dest="subcommand")

    parser_release = subparsers.add_parser("release", help="download the ipinfo country database and convert it")
    parser_release.add_argument('-t', '--token', dest="token", default=os.environ.get("IPINFO_TOKEN"),
                                help="ipinfo access token; default is $IPINFO_TOKEN")
    parser_release.add_argument('-i', '--input', dest="input", type=argparse.FileType('rb'), default=None,
                                help="convert a local country.mmdb instead of downloading it")
    parser_release.add_argument('-o', '--output', dest="output", default="geoip.db",
                                help="output database with every label; default is geoip.db")
    parser_release.add_argument('--cn-output', dest="cn_output", default="geoip-cn.db",
                                help="output database with only the cn label; default is geoip-cn.db")
    parser_release.add_argument('--rule-set-output', dest="rule_set_output", default="rule-set",
                                help="directory for per-label rule-sets, recreated on every run; default is rule-set")
    parser_release.add_argument('-e', '--extend', dest="extend", default=False, action="store_true",
                                help="add to an existing cn-only database instead of starting empty")

    parser_dump = subparsers.add_parser("dump", help="list the networks and labels of a database")
    parser_dump.add_argument('infile', type=argparse.FileType('rb'),
                             help="database file")
    parser_dump.add_argument('outfile', nargs='?', type=argparse.FileType('w'), default=sys.stdout,
                             help="output text file; default is stdout")

    parser_rule_set = subparsers.add_parser("rule-set", help="list the CIDRs of a binary rule-set")
    parser_rule_set.add_argument('infile', type=argparse.FileType('rb'),
                                 help="rule-set file")
    parser_rule_set.add_argument('outfile', nargs='?', type=argparse.FileType('w'), default=sys.stdout,
                                 help="output text file; default is stdout")

    args = parser.parse_args()
    try:
        if args.subcommand == "release":
            run_release(args)
        elif args.subcommand == "dump":
            run_dump(args)
        elif args.subcommand == "rule-set":
            run_rule_set(args)
        else:
            parser.print_help()
            sys.exit("No command provided.")
    except GeoIPError as err:
        sys.exit("[ERROR] %s" % err)

if __name__ == '__main__':
    main()
