#
# Parser for symbol map files produced by the Microsoft linker (link.exe).
#
# Example contents of foo.map:
#
#  FOO
#
#  Timestamp is 5e97f112 (Wed Apr 15 22:45:54 2020)
#
#  Preferred load address is 00400000
#
#  Start         Length     Name                   Class
#  0001:00000000 001012c6H .text                   CODE
#  0002:00000000 00007c18H .rdata                  DATA
#
#   Address         Publics by Value              Rva+Base   Lib:Object
#
#  0001:00000000       ?bar@@YIXH@Z               00401000 f baz.obj
#  0002:00000058       ?qux@@3PBDB                00503058   baz.obj
#  0004:00000000       __IMPORT_DESCRIPTOR_KERNEL32 00731000   kernel32:KERNEL32.dll
#
#  entry point at        0001:000f0290
#
#  Static symbols
#
#  0001:000dc1c2       ?quux@@YIXXZ        004dd1c2 f quuz.obj
#
#  FIXUPS: 101506 21 13 21 15 21 39f 5f 114 211 10 17 9 4a 32 61 64 33 30
#
import enum
import logging
import re
from collections import namedtuple
from datetime import datetime


SECTIONS_HEADER = ["Start", "Length", "Name", "Class"]
PUBLICS_HEADER = ["Address", "Publics", "by", "Value", "Rva+Base", "Lib:Object"]

# asctime() layout: "Wed Apr 15 22:45:54 2020". Day and month names are
# always English, whatever the locale.
DAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
TIMESTAMP_FORMAT = "%m %d %H:%M:%S %Y"

# MAP files are written in the ANSI codepage; latin-1 decodes any byte.
DEFAULT_ENCODING = "latin-1"

UINT64_MAX = (1 << 64) - 1

# Only ASCII whitespace separates fields; latin-1 NEL/NBSP are name bytes.
WHITESPACE = " \t\r\n\v\f"

HEX_RE = re.compile(r"[0-9A-Fa-f]+\Z")
FIELD_SEP_RE = re.compile(r"[ \t\r\n\v\f]+")


class MapFileError(Exception):
    pass


class ParseError(MapFileError):

    def __init__(self, msg, lineno=None, line=None):
        super().__init__(msg)
        self.msg = msg
        self.lineno = lineno
        self.line = line

    def __str__(self):
        if self.lineno is None:
            return self.msg
        return "line %d: %s: %r" % (self.lineno, self.msg, self.line)


# Unknown symbol type tag. Intentionally not a MapFileError.
class UnsupportedSymbolTypeError(NotImplementedError):

    def __init__(self, tag, line):
        super().__init__("support for symbol type %r not yet implemented: %r" % (tag, line))
        self.tag = tag
        self.line = line


class SectionType(enum.Enum):
    CODE = "CODE"
    DATA = "DATA"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, s):
        if s in ("CODE", "DATA"):
            return cls(s)
        return cls.UNKNOWN

    def __str__(self):
        return self.value


class SegmentOffset(namedtuple("SegmentOffset", "seg_num offset")):
    __slots__ = ()

    def __str__(self):
        return "%04X:%08X" % self


Section = namedtuple("Section", "name start size type")

Symbol = namedtuple("Symbol", "mangled_name name addr start object_name is_func is_static")

Map = namedtuple("Map", "name date base_addr entry sects syms")


class State(enum.Enum):
    HEADER = "header"
    IDLE = "idle"
    SECTIONS = "sections"
    PUBLIC_SYMBOLS = "public symbols"
    STATIC_SYMBOLS = "static symbols"


def split_fields(l):
    l = l.strip(WHITESPACE)
    if not l:
        return []
    return FIELD_SEP_RE.split(l)


def has_fields(l, fields):
    return split_fields(l) == fields


def parse_hex(s, what="value"):
    if not HEX_RE.match(s):
        raise ValueError("invalid hexadecimal %s %r" % (what, s))
    v = int(s, 16)
    if v > UINT64_MAX:
        raise ValueError("%s %r does not fit in 64 bits" % (what, s))
    return v


def parse_segment_offset(s):
    """Parse "0001:00093247" into SegmentOffset(1, 0x93247)."""
    seg, colon, offset = s.partition(":")
    if not colon:
        raise ValueError("segment offset %r lacks ':'" % s)
    return SegmentOffset(parse_hex(seg, "segment number"), parse_hex(offset, "offset"))


def parse_timestamp(s):
    # Timestamp is 5e97f112 (Wed Apr 15 22:45:54 2020)
    start = s.find("(")
    end = s.rfind(")")
    if start < 0 or end < start:
        raise ValueError("no date in parentheses")
    fields = split_fields(s[start + 1:end])
    if len(fields) != 5 or fields[0] not in DAYS or fields[1] not in MONTHS:
        raise ValueError("date %r not in asctime() layout" % s[start + 1:end])
    month = MONTHS.index(fields[1]) + 1
    return datetime.strptime("%02d %s" % (month, " ".join(fields[2:])), TIMESTAMP_FORMAT)


def parse_section(l):
    # 0001:00000000 001012c6H .text                   CODE
    fields = split_fields(l)
    if len(fields) != 4:
        raise ValueError("expected 4 section fields, got %d" % len(fields))
    start = parse_segment_offset(fields[0])
    size = fields[1]
    if size.endswith("H"):
        size = size[:-1]
    size = parse_hex(size, "section size")
    return Section(fields[2], start, size, SectionType.from_string(fields[3]))


def parse_symbol(l, is_static=False, demangle=None):
    # 0001:00000000       ?bar@@YIXH@Z               00401000 f baz.obj
    # 0002:00000058       ?qux@@3PBDB                00503058   baz.obj
    fields = split_fields(l)
    if len(fields) not in (4, 5):
        raise ValueError("expected 4 or 5 symbol fields, got %d" % len(fields))
    start = parse_segment_offset(fields[0])
    mangled = fields[1]
    addr = parse_hex(fields[2], "symbol address")
    is_func = False
    if len(fields) == 5:
        if fields[3] != "f":
            raise UnsupportedSymbolTypeError(fields[3], l)
        is_func = True
    name = demangle(mangled) if demangle is not None else ""
    return Symbol(mangled, name, addr, start, fields[-1], is_func, is_static)


class MsvcMapFile:

    def __init__(self, f, demangle=None):
        self.f = iter(f)
        self.lineno = 0
        self.demangle = demangle
        self.state = State.HEADER
        self.name = ""
        self.date = None
        self.base_addr = 0
        self.entry = SegmentOffset(0, 0)
        self.sects = []
        self.syms = []

    # Return next line with surrounding whitespace removed, None at EOF.
    def get(self):
        l = next(self.f, None)
        if l is None:
            return None
        self.lineno += 1
        return l.strip(WHITESPACE)

    def parse_header(self, l):
        # First line is linker output name, whatever it looks like.
        self.name = l
        self.state = State.IDLE

    def parse_idle(self, l):
        if l.startswith("Timestamp is "):
            self.date = parse_timestamp(l)
        elif l.startswith("Preferred load address is "):
            self.base_addr = parse_hex(l[len("Preferred load address is "):], "load address")
        elif has_fields(l, SECTIONS_HEADER):
            self.state = State.SECTIONS
        elif has_fields(l, PUBLICS_HEADER):
            self.start_symbols(State.PUBLIC_SYMBOLS)
        elif l.startswith("Static symbols"):
            self.start_symbols(State.STATIC_SYMBOLS)
        elif l.startswith("entry point at"):
            self.entry = parse_segment_offset(l[len("entry point at"):].strip(WHITESPACE))
        elif l.startswith("FIXUPS:"):
            pass
        elif not l:
            pass
        else:
            logging.warning("line %d: support for line %r not yet implemented", self.lineno, l)

    def start_symbols(self, state):
        l = self.get()
        if l is None:
            raise ParseError("unexpected end of input after header of list of symbols",
                             self.lineno, "")
        if l:
            raise ParseError("unexpected line between header and list of symbols; "
                             "expected empty line", self.lineno, l)
        self.state = state

    def parse_section_line(self, l):
        if not l:
            logging.debug("sections done: %d", len(self.sects))
            self.state = State.IDLE
            return
        self.sects.append(parse_section(l))

    def parse_symbol_line(self, l):
        if not l:
            logging.debug("%s done: %d total", self.state.value, len(self.syms))
            self.state = State.IDLE
            return
        is_static = self.state is State.STATIC_SYMBOLS
        self.syms.append(parse_symbol(l, is_static, self.demangle))

    HANDLERS = {
        State.HEADER: parse_header,
        State.IDLE: parse_idle,
        State.SECTIONS: parse_section_line,
        State.PUBLIC_SYMBOLS: parse_symbol_line,
        State.STATIC_SYMBOLS: parse_symbol_line,
    }

    def parse(self):
        while 1:
            l = self.get()
            if l is None:
                break
            try:
                self.HANDLERS[self.state](self, l)
            except ValueError as e:
                raise ParseError(str(e), self.lineno, l) from e
        return Map(self.name, self.date, self.base_addr, self.entry,
                   tuple(self.sects), tuple(self.syms))


def parse(lines, demangle=None):
    return MsvcMapFile(lines, demangle).parse()


def parse_string(s, demangle=None):
    # Lines end at "\n" only; "\r" goes with the surrounding whitespace.
    lines = s.split("\n")
    if lines[-1] == "":
        lines.pop()
    return parse(lines, demangle)


def parse_bytes(buf, demangle=None, encoding=DEFAULT_ENCODING):
    return parse_string(buf.decode(encoding), demangle)


def parse_file(path, demangle=None, encoding=DEFAULT_ENCODING):
    with open(path, "rb") as f:
        buf = f.read()
    return parse_bytes(buf, demangle, encoding)
