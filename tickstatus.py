"""i3bar/swaybar status line: media title, local addresses and the time.

Writes the i3bar protocol to stdout, one frame per second, woken on the
wall-clock second so the clock block never skips.

Protocol: https://i3wm.org/docs/i3bar-protocol.html
"""

import asyncio, ipaddress, json, logging, math, os, sys, time
from dataclasses import dataclass, fields
from typing import Optional, Union

import netifaces

logger = logging.getLogger(__name__)


@dataclass
class Header:
    """The one-time preamble of the stream."""
    version: int = 1
    click_events: bool = False
    cont_signal: Optional[int] = None
    stop_signal: Optional[int] = None

    def to_json(self):
        ret = {'version': self.version}
        if self.click_events:
            ret['click_events'] = True
        if self.cont_signal is not None:
            ret['cont_signal'] = self.cont_signal
        if self.stop_signal is not None:
            ret['stop_signal'] = self.stop_signal
        return ret


@dataclass
class Block:
    """One segment of the bar for one tick.

    Every field but full_text is optional and left out of the JSON when
    unset. min_width is either a pixel count or a string whose rendered
    width is used instead; both go on the wire as-is.
    """
    full_text: str
    short_text: Optional[str] = None
    color: Optional[str] = None
    background: Optional[str] = None
    border: Optional[str] = None
    border_top: Optional[int] = None
    border_bottom: Optional[int] = None
    border_left: Optional[int] = None
    border_right: Optional[int] = None
    min_width: Optional[Union[int, str]] = None
    align: Optional[str] = None
    name: Optional[str] = None
    instance: Optional[str] = None
    urgent: Optional[bool] = None
    separator: Optional[bool] = None
    separator_block_width: Optional[int] = None
    markup: Optional[str] = None

    def __post_init__(self):
        mw = self.min_width
        if mw is not None and (isinstance(mw, bool) or not isinstance(mw, (int, str))):
            raise TypeError('min_width must be an int or a str, not {}'.format(type(mw).__name__))

    def to_json(self):
        ret = {}
        for field in fields(self):
            value = getattr(self, field.name)
            if value is not None:
                ret[field.name] = value
        return ret


class MediaProbe(object):
    """Title of the active MPRIS player, or None."""
    prefix = 'org.mpris.MediaPlayer2.'
    path = '/org/mpris/MediaPlayer2'
    # Preference order when several players are on the bus
    statuses = ('Playing', 'Paused')

    def __init__(self, bus = None):
        self.bus = bus

    @staticmethod
    def connect():
        """Open the session bus once for the life of the process."""
        try:
            from pydbus import SessionBus
            return SessionBus()
        except Exception:
            logger.warning('No D-Bus session bus, media block disabled', exc_info=True)
            return None

    def players(self):
        names = self.bus.get('.DBus').ListNames()
        return [name for name in names if name.startswith(self.prefix)]

    def find_active(self):
        if self.bus is None:
            return None
        found = []
        for name in self.players():
            try:
                player = self.bus.get(name, self.path)
                found.append((player.PlaybackStatus, player))
            except Exception:
                # Players come and go between ListNames and the query
                logger.debug('Skipping player %s', name, exc_info=True)
        for wanted in self.statuses:
            for status, player in found:
                if status == wanted:
                    return player
        # A stopped player with a track loaded beats an idle one
        for status, player in found:
            if self.has_track(player):
                return player
        return found[0][1] if found else None

    @staticmethod
    def has_track(player):
        try:
            return bool(player.Metadata)
        except Exception:
            logger.debug('No metadata from stopped player', exc_info=True)
            return False

    def read(self):
        try:
            player = self.find_active()
            if player is None:
                return None
            metadata = player.Metadata
        except Exception:
            logger.debug('Media player query failed', exc_info=True)
            return None
        if metadata is None:
            return None
        title = metadata.get('xesam:title')
        return '' if title is None else str(title)


class NetworkProbe(object):
    """Every non-loopback, non-link-local address on the host."""
    af_priority = (netifaces.AF_INET, netifaces.AF_INET6)

    @staticmethod
    def parse(addr):
        if not addr:
            return None
        # netifaces reports scoped IPv6 addresses as fe80::1%eth0
        addr, _, _ = addr.partition('%')
        try:
            return ipaddress.ip_address(addr)
        except ValueError:
            return None

    @staticmethod
    def shown(ip):
        if ip.is_loopback:
            return False
        return not (ip.version == 6 and ip.is_link_local)

    def read(self):
        try:
            ifaces = netifaces.interfaces()
        except Exception:
            logger.debug('Interface enumeration failed', exc_info=True)
            return []

        addrs = []
        for iface in ifaces:
            try:
                table = netifaces.ifaddresses(iface)
            except (ValueError, OSError):
                logger.debug('Interface %s vanished', iface, exc_info=True)
                continue
            for af in self.af_priority:
                for entry in table.get(af, ()):
                    ip = self.parse(entry.get('addr'))
                    if ip is not None and self.shown(ip):
                        addrs.append(str(ip))
        return addrs


class ClockProbe(object):
    format = '%Y-%m-%d %H:%M:%S'
    timefunc = time.localtime

    def read(self, now = None):
        return time.strftime(self.format, self.timefunc(now))


class FrameAssembler(object):
    """Turns one tick's probe readings into the ordered block list.

    The media block is dropped, not blanked, when there is no player.
    """
    media_color = '#97a891'
    network_color = '#91a4a8'
    clock_color = None
    separator_block_width = 20
    sep = ' '

    def block(self, text, color):
        return Block(full_text=text, color=color, separator_block_width=self.separator_block_width)

    def assemble(self, title, addresses, timestamp):
        blocks = []
        if title is not None:
            blocks.append(self.block(title, self.media_color))
        blocks.append(self.block(self.sep.join(addresses), self.network_color))
        blocks.append(self.block(timestamp, self.clock_color))
        return blocks


class ProtocolWriter(object):
    """Header, then one comma-prefixed array per line.

    The header's trailing [[] opens the infinite array with an empty first
    element, so every frame after it carries a leading comma.
    """
    separators = (',', ':')

    def __init__(self, fo):
        self.fo = fo

    def dumps(self, obj):
        return json.dumps(obj, separators=self.separators)

    def write_header(self, header):
        self.fo.write(self.dumps(header.to_json()))
        self.fo.write('\n[[]\n')
        self.fo.flush()

    def write_frame(self, blocks):
        self.fo.write(',')
        self.fo.write(self.dumps([block.to_json() for block in blocks]))
        self.fo.write('\n')
        self.fo.flush()


class SecondWaiter(object):
    """Sleeps until the next whole interval of the wall clock."""

    def __init__(self, interval = 1.0, clock = time.CLOCK_REALTIME):
        self.interval, self.clock = interval, clock
        self.start = None

    def now(self):
        return time.clock_gettime(self.clock)

    def mark(self):
        self.start = self.now()
        return self.start

    def delay(self, now, start = None):
        """Seconds from now to the first boundary after start, never negative.

        A tick that began at start and ran past that boundary gets zero.
        """
        if start is None:
            start = now
        target = (math.floor(start / self.interval) + 1) * self.interval
        return max(0.0, target - now)

    async def wait(self):
        dur = self.delay(self.now(), self.start)
        self.start = None
        await asyncio.sleep(dur)


class Status(object):
    def __init__(self, media, network, clock, assembler = None, waiter = None, header = None):
        self.media, self.network, self.clock = media, network, clock
        self.assembler = FrameAssembler() if assembler is None else assembler
        self.waiter = SecondWaiter() if waiter is None else waiter
        self.header = Header() if header is None else header

    def frame(self):
        return self.assembler.assemble(self.media.read(), self.network.read(), self.clock.read())

    def tick(self, writer):
        blocks = self.frame()
        writer.write_frame(blocks)
        return blocks

    async def co_output(self, fo):
        writer = ProtocolWriter(fo)
        writer.write_header(self.header)
        while True:
            self.waiter.mark()
            self.tick(writer)
            await self.waiter.wait()

    def run(self, fo = None):
        return asyncio.run(self.co_output(sys.stdout if fo is None else fo))


def main():
    # stdout belongs to the bar
    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )
    st = Status(MediaProbe(MediaProbe.connect()), NetworkProbe(), ClockProbe())
    try:
        st.run()
    except KeyboardInterrupt:
        return 0
    except BrokenPipeError:
        logger.error('Output stream closed, exiting')
        # Keep the interpreter's final flush of stdout from raising again
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
