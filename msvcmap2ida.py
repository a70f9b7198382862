#
# Convert MSVC mapfiles to an IDA Python script which names all symbols.
#
import sys
import logging

import msvcmap


def dump_ida_script(m, file=None):
    for sym in m.syms:
        print('set_name(0x%08X, "%s", SN_NOWARN)' % (sym.addr, sym.mangled_name), file=file)


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    logging.basicConfig(level=logging.DEBUG)
    for path in argv:
        try:
            m = msvcmap.parse_file(path)
        except (OSError, msvcmap.MapFileError) as e:
            sys.exit("%s: %s" % (path, e))
        dump_ida_script(m)


if __name__ == "__main__":
    main()
