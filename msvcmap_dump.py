#
# Parse MSVC mapfiles and dump all information collected.
#
import sys
import logging

import msvcmap


def dump(m, file=None):
    print(m.name, file=file)
    print("date:  %s" % (m.date.isoformat(" ") if m.date is not None else "-"), file=file)
    print("base:  %08x" % m.base_addr, file=file)
    print("entry: %s" % (m.entry,), file=file)
    print(file=file)

    for s in m.sects:
        print("%s %08x %-7s %s" % (s.start, s.size, s.type, s.name), file=file)
    print(file=file)

    for sym in m.syms:
        flags = ("f" if sym.is_func else "-") + ("s" if sym.is_static else "-")
        line = "%s %08x %s %s %s" % (sym.start, sym.addr, flags, sym.object_name, sym.mangled_name)
        if sym.name:
            line += " " + sym.name
        print(line, file=file)


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    logging.basicConfig(level=logging.DEBUG)
    for path in argv:
        try:
            m = msvcmap.parse_file(path)
        except (OSError, msvcmap.MapFileError) as e:
            sys.exit("%s: %s" % (path, e))
        dump(m)


if __name__ == "__main__":
    main()
