#!/usr/bin/env python3

# prevent local imports
if __name__ == "__main__":
    __import__('sys').path.pop(0)

import struct


BSIZE = 512
IPB = BSIZE // 64
BPB = BSIZE * 8


def xxd(data, width=16):
    for i in range(0, len(data), width):
        yield '%-*s %-*s' % (
                3*width,
                ' '.join('%02x' % b for b in data[i:i+width]),
                width,
                ''.join(
                    b if b >= ' ' and b <= '~' else '.'
                        for b in map(chr, data[i:i+width])))

# which region does a block belong to?
def region(block, size, ninodes):
    bmap_start = 2 + ninodes//IPB + 1
    data_start = (size-1)//BPB + ninodes//IPB + 4
    if block == 0:
        return 'boot'
    elif block == 1:
        return 'superblock'
    elif block < bmap_start:
        return 'inodes %d-%d' % (
                (block-2)*IPB, (block-2)*IPB + IPB-1)
    elif block < data_start:
        return 'bitmap %d-%d' % (
                (block-bmap_start)*BPB, (block-bmap_start)*BPB + BPB-1)
    elif block < size:
        return 'data'
    else:
        return 'out of range'

def main(disk, block=None, *,
        inode=None,
        off=None,
        size=None):
    with open(disk, 'rb') as f:
        f.seek(1*BSIZE)
        fssize, _, ninodes = struct.unpack('<III',
                f.read(12).ljust(12, b'\0'))

        # an inode implies its block and offset
        if inode is not None:
            block = 2 + inode//IPB
            off = (inode % IPB) * (BSIZE//IPB)
            size = BSIZE//IPB

        # off/size may be ranges
        block_ = block if block is not None else 0
        off_ = ((off.start or 0) if isinstance(off, slice)
                else off if off is not None
                else 0)
        size_ = (size.stop - (size.start or 0)
                    if isinstance(size, slice)
                else size if size is not None
                else off.stop - off_
                    if isinstance(off, slice) and off.stop is not None
                else BSIZE - off_)

        # read the block
        f.seek((block_ * BSIZE) + off_)
        data = f.read(size_)

        # data blocks also have a bitmap bit
        region_ = region(block_, fssize, ninodes)
        if region_ == 'data':
            f.seek((block_//BPB + ninodes//IPB + 3)*BSIZE
                    + (block_ % BPB)//8)
            bits = f.read(1)
            used = bits and bits[0] & (1 << (block_ % 8))
            region_ += ', used' if used else ', free'

        # print the header
        print('block %s, %s, size %d' % (
                '0x%x.%x' % (block_, off_)
                    if off is not None
                    else '0x%x' % block_,
                region_,
                len(data)))

        # render the hex view
        for o, line in enumerate(xxd(data)):
            print('%08x: %s' % (off_ + 16*o, line))


if __name__ == "__main__":
    import argparse
    import sys
    parser = argparse.ArgumentParser(
            description="Debug blocks of an xv6 filesystem image.",
            allow_abbrev=False)
    parser.add_argument(
            'disk',
            help="File containing the filesystem image.")
    parser.add_argument(
            'block',
            nargs='?',
            type=lambda x: int(x, 0),
            help="Block address.")
    parser.add_argument(
            '-i', '--inode',
            type=lambda x: int(x, 0),
            help="Show the on-disk record of this inode.")
    parser.add_argument(
            '--off',
            type=lambda x: (
                slice(*(int(x, 0) if x.strip() else None
                        for x in x.split(',', 1)))
                    if ',' in x
                    else int(x, 0)),
            help="Show a specific offset, may be a range.")
    parser.add_argument(
            '-n', '--size',
            type=lambda x: (
                slice(*(int(x, 0) if x.strip() else None
                        for x in x.split(',', 1)))
                    if ',' in x
                    else int(x, 0)),
            help="Show this many bytes, may be a range.")
    sys.exit(main(**{k: v
            for k, v in vars(parser.parse_intermixed_args()).items()
            if v is not None}))
