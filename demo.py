"""
StreamProto Demo

Compiles the protocols of protocols/demo.proto and prints the settings,
the disassembly and the serialized stream of each one.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))
from protoapi.context import Context
from protocompiler import ProtocolError


def protocol_dir():
    """Find protocols/ next to this script or under the install prefix."""
    for base in (Path(__file__).parent, Path(sys.prefix)):
        if (base / 'protocols' / 'demo.proto').exists():
            return base / 'protocols'
    return Path(__file__).parent / 'protocols'


PROTOCOLS = [
    'read_voltage(1)',
    'set_voltage(2,V)',
    'state',
    'reset',
]


def main():
    print('=== StreamProto Demo ===')
    print()

    ctx = Context(path=str(protocol_dir()))
    print(f'[1] Created context, search path {ctx.registry.path}')

    for index, name in enumerate(PROTOCOLS, start=2):
        try:
            compiled = ctx.compile('demo.proto', name)
        except ProtocolError as e:
            print(f'[{index}] {name}: FAILED')
            print(e)
            return 1
        print(f'[{index}] Compiled {name}')
        for key, value in compiled.settings.describe().items():
            print(f'      {key} = {value}')
        print(compiled.disassemble())
        print(f'      {len(compiled.serialize())} bytes serialized')
        print()

    ctx.free()
    print('SUCCESS! All protocols compiled.')
    return 0


if __name__ == '__main__':
    sys.exit(main())
