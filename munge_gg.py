#! /usr/bin/env python3
"""
Combine a Greengenes taxonomy with the sequence database.

Every FASTA record whose identifier is listed in the taxonomy table gets its
header replaced by the cleaned taxonomy string. Repeated taxonomy strings are
made unique with a _REPEAT_<n>; suffix. Records without a taxonomy keep their
identifier. Sequences are written on one line.

usage: munge_gg.py -g GG_FILE -t TAX_FILE -o FILE
"""

import argparse
import re
import sys

from Bio import SeqIO

TRAILING_RANK = re.compile(r".__$")
EMPTY_RANK = re.compile(r".__;")
REPEAT_SUFFIX = "_REPEAT_{};"


class TaxonomyFormatError(ValueError):
    """A taxonomy row that does not have an id and a taxonomy column."""

    def __init__(self, line_number, line):
        self.line_number = line_number
        self.line = line
        super().__init__(f"taxonomy line {line_number} has fewer than two tab separated fields: {line!r}")


def strip_quotes(taxonomy):
    return taxonomy.replace('"', "")


def strip_trailing_rank(taxonomy):
    # only the very last marker, e.g. "k__Bacteria;p__" -> "k__Bacteria;"
    return TRAILING_RANK.sub("", taxonomy, count=1)


def strip_empty_ranks(taxonomy):
    return EMPTY_RANK.sub("", taxonomy)


def clean_taxonomy(raw):
    """Apply the cleanup rules in order: quotes, trailing rank, empty ranks."""
    return strip_empty_ranks(strip_trailing_rank(strip_quotes(raw)))


def load_taxonomy(handle):
    """
    Build the id -> taxonomy lookup from an open taxonomy table.

    The first line is a header and is always discarded. Taxonomy strings that
    were already seen get a _REPEAT_<n>; suffix, so no two ids share the same
    value. A repeated id overwrites the earlier entry.

    :param handle: Open text handle on the tab separated taxonomy table
    :return: dict mapping sequence id to taxonomy string
    """
    tax_lookup = {}
    dupe_counts = {}

    next(handle, None)
    for line_number, line in enumerate(handle, start=2):
        line = line.rstrip("\r\n")
        if not line:
            continue
        fields = line.split("\t")
        if len(fields) < 2:
            raise TaxonomyFormatError(line_number, line)

        seq_id = fields[0]
        taxonomy = clean_taxonomy(fields[1])

        if taxonomy in dupe_counts:
            dupe_counts[taxonomy] += 1
            taxonomy += REPEAT_SUFFIX.format(dupe_counts[taxonomy])
        else:
            dupe_counts[taxonomy] = 1

        tax_lookup[seq_id] = taxonomy

    return tax_lookup


def read_taxonomy(taxonomy_file):
    with open(taxonomy_file, "r") as tax_handle:
        return load_taxonomy(tax_handle)


def rename_header(seq_id, taxonomy):
    return taxonomy.get(seq_id, seq_id)


def rewrite_records(handle, taxonomy):
    """
    Yield (header, sequence) pairs for every record of a FASTA handle.

    Wrapped sequences come back joined on a single line. A record with no
    sequence lines yields an empty sequence. Lines before the first header
    are skipped.
    """
    for record in SeqIO.parse(handle, "fasta-pearson"):
        yield rename_header(record.id, taxonomy), str(record.seq)


def write_records(records, out_handle):
    count = 0
    for header, sequence in records:
        out_handle.write(f">{header}\n")
        out_handle.write(f"{sequence}\n")
        count += 1
    return count


def merge_taxonomy(taxonomy_file, greengenes_file, output_file):
    """
    Write output_file with the headers of greengenes_file replaced by taxonomy.

    The whole taxonomy table is loaded before any sequence is read.

    :return: number of records written
    """
    taxonomy = read_taxonomy(taxonomy_file)
    print(f"Loaded {len(taxonomy)} taxonomy entries from {taxonomy_file}")

    # database before output: a missing database must not create the output file
    with open(greengenes_file, "r") as gg_handle, open(output_file, "w") as out_handle:
        return write_records(rewrite_records(gg_handle, taxonomy), out_handle)


def print_banner():
    print("----------------------------------------------------------------")
    print(f" {sys.argv[0]}")
    print(" Copyright (C) Michael Imelfort")
    print("")
    print(" This program comes with ABSOLUTELY NO WARRANTY;")
    print(" This is free software, and you are welcome to redistribute it")
    print(" under certain conditions: See the source for more details.")
    print("----------------------------------------------------------------")


def arguments():
    parser = argparse.ArgumentParser(description="Combine a greengenes taxonomy with the database.")
    parser.add_argument("-g", "--greengenes", metavar="GG_FILE", help="Greengenes database in fasta format", required=True)
    parser.add_argument("-t", "--taxonomy", metavar="TAX_FILE", help="Taxonomy to apply", required=True)
    parser.add_argument("-o", "--out", metavar="FILE", help="File to write to", required=True)
    return parser


def main(argv=None):
    print_banner()
    parser = arguments()
    if argv is None:
        argv = sys.argv[1:]

    # no arguments supplied, print the usage and exit
    if not argv:
        parser.print_help()
        sys.exit(1)

    args = parser.parse_args(argv)

    try:
        written = merge_taxonomy(args.taxonomy, args.greengenes, args.out)
    except OSError as e:
        # failed writes carry no filename, only open() sets it
        if e.filename is None:
            sys.exit(f"**ERROR: could not write to file: {args.out} {e.strerror}")
        mode = "writing" if e.filename == args.out else "reading"
        sys.exit(f"**ERROR: could not open file: {e.filename} for {mode} {e.strerror}")
    except TaxonomyFormatError as e:
        sys.exit(f"**ERROR: {args.taxonomy}: {e}")
    except UnicodeDecodeError as e:
        sys.exit(f"**ERROR: input is not readable text: {e}")

    print(f"Wrote {written} records to {args.out}")


if __name__ == "__main__":
    main()
