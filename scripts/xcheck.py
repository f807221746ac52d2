#!/usr/bin/env python3
#
# Script to check xv6-style filesystem images for consistency.
#
# Example:
# ./scripts/xcheck.py fs.img
# ./scripts/xcheck.py fs.img --info --files -v
#
# Copyright (c) 2026, The xcheck authors.
# SPDX-License-Identifier: BSD-3-Clause
#

# prevent local imports
if __name__ == "__main__":
    __import__('sys').path.pop(0)

import collections as co
import itertools as it
import struct
import sys


BSIZE       = 512               # block size
NDIRECT     = 12                # direct addresses per inode
NINDIRECT   = BSIZE // 4        # addresses per indirect block
DIRSIZ      = 14                # width of a dirent name
ROOTINO     = 1                 # root directory inode

T_UNUSED    = 0
T_DIR       = 1
T_FILE      = 2
T_DEV       = 3

TYPES = {
    T_UNUSED:   'unused',
    T_DIR:      'dir',
    T_FILE:     'reg',
    T_DEV:      'dev',
}

# on-disk records, all little-endian
SUPERBLOCK_STRUCT   = struct.Struct('<III')
INODE_STRUCT        = struct.Struct('<hhhhI%dI' % (NDIRECT+1))
DIRENT_STRUCT       = struct.Struct('<H%ds' % DIRSIZ)
INDIRECT_STRUCT     = struct.Struct('<%dI' % NINDIRECT)

IPB = BSIZE // INODE_STRUCT.size    # inodes per block
DPB = BSIZE // DIRENT_STRUCT.size   # dirents per block
BPB = BSIZE * 8                     # bitmap bits per block

ERRS = [
    ('ImageNotFound',               "image not found"                       ),
    ('ImageReadFailure',            "image could not be read"               ),
    ('BadInode',                    "bad inode"                             ),
    ('BadAddress',                  "bad %s address in inode"               ),
    ('AddressNotMarkedUsed',        "address used by inode but marked "
                                        "free in bitmap"                    ),
    ('OrphanUsedBlock',             "bitmap marks block in use but it is "
                                        "not in use"                        ),
    ('MalformedDirectory',          "directory not properly formatted"      ),
    ('MissingRootDirectory',        "root directory does not exist"         ),
    ('ParentMismatch',              "parent directory mismatch"             ),
    ('DuplicateBlockAddress',       "%s address used more than once"        ),
    ('UnreferencedLiveInode',       "inode marked use but not found in a "
                                        "directory"                         ),
    ('ReferencedFreeInode',         "inode referred to in directory but "
                                        "marked free"                       ),
    ('LinkCountMismatch',           "bad reference count for file"          ),
    ('MultiplyLinkedDirectory',     "directory appears more than once in "
                                        "file system"                       ),
    ('InaccessibleDirectoryLoop',   "inaccessible directory exists"         ),
]


# the first violation found, kinds and messages come from ERRS
class Corruption(co.namedtuple('Corruption', 'kind,msg,detail')):
    __slots__ = ()
    def __new__(cls, kind, detail=None, *args):
        msg = dict(ERRS)[kind]
        if args:
            msg = msg % args
        return super().__new__(cls, kind, msg, detail)

    def __str__(self):
        return 'ERROR: %s%s.' % (
                self.msg,
                ' (%s)' % self.detail if self.detail else '')

class Superblock(co.namedtuple('Superblock', 'size,nblocks,ninodes')):
    __slots__ = ()
    @classmethod
    def fetch(cls, data):
        return cls._make(SUPERBLOCK_STRUCT.unpack_from(data, 1*BSIZE))

    def __repr__(self):
        return '<%s %s>' % (self.__class__.__name__, self.repr())

    def repr(self):
        return 'size %d, nblocks %d, ninodes %d' % (
                self.size, self.nblocks, self.ninodes)

# region boundaries, all in blocks, half-open
class Layout(co.namedtuple('Layout', [
        'inode_start', 'inode_end',
        'bmap_start', 'data_start', 'data_end'])):
    __slots__ = ()

# block containing the bitmap bit for block b
def bblock(b, ninodes):
    return b//BPB + ninodes//IPB + 3

def layout(size, nblocks, ninodes):
    # the inode table spans ninodes/IPB+1 blocks, the bitmap follows it
    inode_start = 2
    inode_end = inode_start + ninodes//IPB + 1
    return Layout(
            inode_start,
            inode_end,
            inode_end,
            bblock(size-1, ninodes) + 1,
            size)


class Inode:
    def __init__(self, inum, type, major, minor, nlink, size, addrs):
        self.inum = inum
        self.type = type
        self.major = major
        self.minor = minor
        self.nlink = nlink
        self.size = size
        # zero means unset
        self.addrs = tuple(addr if addr != 0 else None for addr in addrs)

    @classmethod
    def fetch(cls, data, off, inum):
        type, major, minor, nlink, size, *addrs = (
                INODE_STRUCT.unpack_from(data, off))
        return cls(inum, type, major, minor, nlink, size, addrs)

    @property
    def direct(self):
        return self.addrs[:NDIRECT]

    @property
    def indirect(self):
        return self.addrs[NDIRECT]

    def isdir(self):
        return self.type == T_DIR

    def __bool__(self):
        return self.type != T_UNUSED

    def __repr__(self):
        return '<%s %s>' % (self.__class__.__name__, self.repr())

    def repr(self):
        return 'inode %d %s' % (
                self.inum,
                TYPES.get(self.type, 'type %d' % self.type))

class Dirent(co.namedtuple('Dirent', 'inum,name')):
    __slots__ = ()
    @classmethod
    def fetch(cls, data, off):
        inum, name = DIRENT_STRUCT.unpack_from(data, off)
        # names are NUL-padded, but may fill the whole field
        return cls(inum, name.split(b'\0', 1)[0])

    def isdot(self):
        return self.name in (b'.', b'..')

    def namerepr(self):
        return self.name.decode('utf8', errors='replace')


# a read-only view of an image, everything is decoded on demand
class Xv6fs:
    def __init__(self, data, superblock):
        self.data = data
        self.superblock = superblock
        self.layout = layout(*superblock)

    @classmethod
    def fetch(cls, data):
        return cls(data, Superblock.fetch(data))

    @property
    def size(self):
        return self.superblock.size

    @property
    def ninodes(self):
        return self.superblock.ninodes

    def __repr__(self):
        return '<%s %s>' % (self.__class__.__name__, self.repr())

    def repr(self):
        return 'xv6fs %sx%s' % (BSIZE, self.size)

    def readblock(self, block):
        return self.data[block*BSIZE:(block+1)*BSIZE]

    def isdata(self, block):
        return self.layout.data_start <= block < self.layout.data_end

    def inode(self, inum):
        if inum < 0 or inum >= self.ninodes:
            raise IndexError('inode %d out of range' % inum)
        block = inum//IPB + self.layout.inode_start
        return Inode.fetch(self.data,
                block*BSIZE + (inum % IPB)*INODE_STRUCT.size,
                inum)

    def inodes(self):
        for inum in range(self.ninodes):
            yield self.inode(inum)

    def bmapbit(self, block):
        off = bblock(block, self.ninodes)*BSIZE + (block % BPB)//8
        return (self.data[off] & (1 << (block % 8))) != 0

    def dirents(self, block):
        return [Dirent.fetch(self.data,
                    block*BSIZE + i*DIRENT_STRUCT.size)
                for i in range(DPB)]

    # raw entries of an inode's indirect block, including zeros
    def indirects(self, inode):
        if inode.indirect is None:
            return ()
        return INDIRECT_STRUCT.unpack_from(self.data, inode.indirect*BSIZE)

    # data blocks of an inode, direct then indirect, in slot order
    def blocks(self, inode):
        return it.chain(
                (addr for addr in inode.direct if addr is not None),
                (addr for addr in self.indirects(inode) if addr != 0))

    # used entries of a directory
    def walk(self, inode):
        for block in self.blocks(inode):
            for dirent in self.dirents(block):
                if dirent.inum != 0:
                    yield dirent

    def parent(self, inode):
        return Dirent.fetch(self.data,
                inode.direct[0]*BSIZE + DIRENT_STRUCT.size).inum


# the image must cover everything the superblock says it holds
def ck_image(data):
    if len(data) % BSIZE != 0:
        yield Corruption('ImageReadFailure',
                'size %d is not a multiple of %d' % (len(data), BSIZE))
        return
    if len(data) < 2*BSIZE:
        yield Corruption('ImageReadFailure',
                'no superblock, size %d' % len(data))
        return

    superblock = Superblock.fetch(data)
    layout_ = layout(*superblock)
    if len(data) < max(superblock.size, layout_.data_start)*BSIZE:
        yield Corruption('ImageReadFailure',
                'truncated, %d blocks but superblock size %d' % (
                    len(data)//BSIZE, superblock.size))

def ck_inodes(fs):
    for inode in fs.inodes():
        if inode.type not in TYPES:
            yield Corruption('BadInode',
                    'inode %d, type %d' % (inode.inum, inode.type))

def ck_addrs(fs):
    def ckaddr(inode, kind, slot, addr):
        if not fs.isdata(addr):
            yield Corruption('BadAddress',
                    'inode %d, %s %d, block %d' % (
                        inode.inum, kind, slot, addr),
                    kind)
        elif not fs.bmapbit(addr):
            yield Corruption('AddressNotMarkedUsed',
                    'inode %d, %s %d, block %d' % (
                        inode.inum, kind, slot, addr))

    for inode in fs.inodes():
        if not inode:
            continue

        for slot, addr in enumerate(inode.direct):
            if addr is not None:
                yield from ckaddr(inode, 'direct', slot, addr)

        if inode.indirect is None:
            continue
        yield from ckaddr(inode, 'indirect', NDIRECT, inode.indirect)
        # don't read the indirect block unless it's in range
        if not fs.isdata(inode.indirect):
            continue

        for i, addr in enumerate(fs.indirects(inode)):
            if addr != 0:
                yield from ckaddr(inode, 'indirect', NDIRECT+i, addr)

def ck_bmap(fs):
    used = set()
    for inode in fs.inodes():
        if not inode:
            continue
        used.update(fs.blocks(inode))
        if inode.indirect is not None:
            used.add(inode.indirect)

    for block in range(fs.layout.data_start, fs.layout.data_end):
        if fs.bmapbit(block) and block not in used:
            yield Corruption('OrphanUsedBlock', 'block %d' % block)

def ck_dirs(fs):
    for inode in fs.inodes():
        if not inode.isdir():
            continue

        if inode.direct[0] is None:
            yield Corruption('MalformedDirectory',
                    'inode %d, no data blocks' % inode.inum)
            continue

        dot, dotdot = fs.dirents(inode.direct[0])[:2]
        if dot.name != b'.' or dot.inum != inode.inum:
            yield Corruption('MalformedDirectory',
                    'inode %d, entry 0 is %r -> %d' % (
                        inode.inum, dot.namerepr(), dot.inum))
        elif dotdot.name != b'..' or dotdot.inum == 0:
            yield Corruption('MalformedDirectory',
                    'inode %d, entry 1 is %r -> %d' % (
                        inode.inum, dotdot.namerepr(), dotdot.inum))

    # the root is its own parent
    root = fs.inode(ROOTINO) if fs.ninodes > ROOTINO else None
    if (not root
            or not root.isdir()
            or root.direct[0] is None
            or any(dirent.inum != ROOTINO
                for dirent in fs.dirents(root.direct[0])[:2])):
        yield Corruption('MissingRootDirectory', 'inode %d' % ROOTINO)

def ck_parents(fs):
    for inode in fs.inodes():
        if not inode.isdir() or inode.inum == ROOTINO:
            continue

        pinum = fs.parent(inode)
        if pinum >= fs.ninodes:
            yield Corruption('ParentMismatch',
                    'inode %d, parent %d out of range' % (
                        inode.inum, pinum))
            continue

        parent = fs.inode(pinum)
        if not parent.isdir():
            yield Corruption('ParentMismatch',
                    'inode %d, parent %d is not a directory' % (
                        inode.inum, pinum))
        elif not any(dirent.inum == inode.inum and not dirent.isdot()
                for dirent in fs.walk(parent)):
            yield Corruption('ParentMismatch',
                    'inode %d, not found in parent %d' % (
                        inode.inum, pinum))

def ck_dups(fs):
    # indirect block addresses live in the inode, so they count as direct
    direct = []
    indirect = []
    for inode in fs.inodes():
        if not inode:
            continue
        direct.extend(addr for addr in inode.addrs if addr is not None)
        indirect.extend(addr for addr in fs.indirects(inode) if addr != 0)

    def dups(addrs):
        addrs = sorted(addrs)
        for a, b in zip(addrs, addrs[1:]):
            if a == b:
                yield a

    for addr in dups(direct):
        yield Corruption('DuplicateBlockAddress',
                'block %d' % addr,
                'direct')
    for addr in dups(indirect):
        yield Corruption('DuplicateBlockAddress',
                'block %d' % addr,
                'indirect')
    for addr in sorted(set(direct) & set(indirect)):
        yield Corruption('DuplicateBlockAddress',
                'block %d, direct and indirect' % addr,
                'indirect')

def ck_refs(fs):
    use = [False] * fs.ninodes
    ref = [0] * fs.ninodes
    for inode in fs.inodes():
        if not inode:
            continue
        use[inode.inum] = True
        if not inode.isdir():
            continue

        for dirent in fs.walk(inode):
            if dirent.isdot():
                continue
            if dirent.inum >= fs.ninodes:
                yield Corruption('ReferencedFreeInode',
                        'inode %d, named %r in directory %d' % (
                            dirent.inum, dirent.namerepr(), inode.inum))
                continue
            ref[dirent.inum] += 1

    # the root and the inode before it are exempt
    for inum in range(ROOTINO+1, fs.ninodes):
        if use[inum] and ref[inum] < 1:
            yield Corruption('UnreferencedLiveInode', 'inode %d' % inum)
            continue
        if ref[inum] >= 1 and not use[inum]:
            yield Corruption('ReferencedFreeInode', 'inode %d' % inum)
            continue
        if not use[inum]:
            continue

        inode = fs.inode(inum)
        if inode.type in {T_FILE, T_DEV} and inode.nlink != ref[inum]:
            yield Corruption('LinkCountMismatch',
                    'inode %d, nlink %d, %d references' % (
                        inum, inode.nlink, ref[inum]))
        elif inode.isdir() and ref[inum] != 1:
            yield Corruption('MultiplyLinkedDirectory',
                    'inode %d, %d references' % (inum, ref[inum]))

def ck_loops(fs):
    # directories already known to reach the root
    reached = {ROOTINO}
    for inode in fs.inodes():
        if not inode.isdir() or inode.inum == ROOTINO:
            continue

        seen = {inode.inum}
        inum = fs.parent(inode)
        # more than ninodes steps can only be a cycle
        for _ in range(fs.ninodes):
            if inum in reached:
                reached.update(seen)
                break
            if inum in seen:
                yield Corruption('InaccessibleDirectoryLoop',
                        'inode %d, revisits %d' % (inode.inum, inum))
                break
            seen.add(inum)
            inum = fs.parent(fs.inode(inum))
        else:
            yield Corruption('InaccessibleDirectoryLoop',
                    'inode %d' % inode.inum)

# later passes rely on earlier ones, order matters
CHECKS = [
    ('inodes',  ck_inodes),
    ('addrs',   ck_addrs),
    ('bmap',    ck_bmap),
    ('dirs',    ck_dirs),
    ('parents', ck_parents),
    ('dups',    ck_dups),
    ('refs',    ck_refs),
    ('loops',   ck_loops),
]

# run every pass, returning the first violation or None
def xcheck(fs):
    for name, ck in CHECKS:
        err = next(ck(fs), None)
        if err is not None:
            return err
    return None


def dbg_info(fs, **args):
    l = fs.layout
    print('xv6fs %sx%s, %d inodes, %d data blocks' % (
            BSIZE, fs.size, fs.ninodes, fs.superblock.nblocks))
    print('%-12s %d-%d (%d inodes per block)' % (
            'inodes', l.inode_start, l.inode_end-1, IPB))
    print('%-12s %d-%d' % (
            'bitmap', l.bmap_start, l.data_start-1))
    print('%-12s %d-%d' % (
            'data', l.data_start, l.data_end-1))

def dbg_inodes(fs, **args):
    print('%5s %-6s %5s %5s %8s  %s' % (
            'inode', 'type', 'major', 'nlink', 'size', 'addrs'))
    for inode in fs.inodes():
        if not inode:
            continue
        print('%5d %-6s %5s %5d %8d  %s%s' % (
                inode.inum,
                TYPES.get(inode.type, '?'),
                '%d.%d' % (inode.major, inode.minor)
                    if inode.type == T_DEV else '',
                inode.nlink,
                inode.size,
                ' '.join('%d' % addr
                    for addr in inode.direct if addr is not None),
                ' | %d' % inode.indirect
                    if inode.indirect is not None else ''))

def dbg_files(fs, *,
        color=False,
        **args):
    # only walk what can be read safely
    def readable(inode):
        addrs = [addr for addr in inode.addrs if addr is not None]
        if not all(fs.isdata(addr) for addr in addrs):
            return False
        return all(fs.isdata(addr)
                for addr in fs.indirects(inode) if addr != 0)

    # explicit stack of dirent iterators, trees can be deeper than
    # Python's recursion limit
    seen = set()
    stack = []
    def push(inode, depth):
        seen.add(inode.inum)
        if not readable(inode):
            print('%s%s(corrupted inode %d)%s' % (
                    '\x1b[31m' if color else '',
                    '  '*depth,
                    inode.inum,
                    '\x1b[m' if color else ''))
            return
        stack.append((fs.walk(inode), depth))

    if fs.ninodes <= ROOTINO or not fs.inode(ROOTINO).isdir():
        print('(no root directory)')
        return
    print('%-*s %5d %-6s' % (24, '/', ROOTINO, 'dir'))
    push(fs.inode(ROOTINO), 1)

    while stack:
        dirents, depth = stack[-1]
        dirent = next(dirents, None)
        if dirent is None:
            stack.pop()
            continue
        if dirent.isdot():
            continue
        if dirent.inum >= fs.ninodes:
            print('%s%-*s %5d ?%s' % (
                    '\x1b[31m' if color else '',
                    24, '  '*depth + dirent.namerepr(),
                    dirent.inum,
                    '\x1b[m' if color else ''))
            continue

        child = fs.inode(dirent.inum)
        print('%-*s %5d %-6s %8d' % (
                24, '  '*depth + dirent.namerepr()
                    + ('/' if child.isdir() else ''),
                child.inum,
                TYPES.get(child.type, '?'),
                child.size))
        if child.isdir() and child.inum not in seen:
            push(child, depth+1)


def main(disk, *,
        info=False,
        inodes=False,
        files=False,
        verbose=False,
        quiet=False,
        color='auto',
        **args):
    # figure out what color should be
    if color == 'auto':
        color = sys.stdout.isatty()
    elif color == 'always':
        color = True
    else:
        color = False

    err = None
    try:
        with open(disk, 'rb') as f:
            data = f.read()
    except FileNotFoundError:
        err = Corruption('ImageNotFound', disk)
    except OSError as e:
        err = Corruption('ImageReadFailure',
                '%s, %s' % (disk, e.strerror or e))
    else:
        err = next(ck_image(data), None)

    if err is None:
        fs = Xv6fs.fetch(data)

        if info and not quiet:
            dbg_info(fs, **args)
        if inodes and not quiet:
            dbg_inodes(fs, **args)
        if files and not quiet:
            dbg_files(fs, color=color, **args)

        for name, ck in CHECKS:
            err = next(ck(fs), None)
            if err is not None:
                break
            if verbose and not quiet:
                print('ck %-8s ok' % name)

    if err is not None:
        print('%s%s%s' % (
                '\x1b[1;31m' if color else '',
                err,
                '\x1b[m' if color else ''),
            file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    import argparse
    import sys
    parser = argparse.ArgumentParser(
            description="Check an xv6 filesystem image for consistency.",
            allow_abbrev=False)
    parser.add_argument(
            'disk',
            help="File containing the filesystem image.")
    parser.add_argument(
            '--info',
            action='store_true',
            help="Show the superblock and the computed layout.")
    parser.add_argument(
            '--inodes',
            action='store_true',
            help="Show the in-use inodes.")
    parser.add_argument(
            '--files',
            action='store_true',
            help="Show the directory tree.")
    parser.add_argument(
            '-v', '--verbose',
            action='store_true',
            help="Show each check as it passes.")
    parser.add_argument(
            '-q', '--quiet',
            action='store_true',
            help="Don't show anything, useful when checking for errors.")
    parser.add_argument(
            '--color',
            choices=['never', 'always', 'auto'],
            default='auto',
            help="When to use terminal colors. Defaults to 'auto'.")
    sys.exit(main(**{k: v
            for k, v in vars(parser.parse_intermixed_args()).items()
            if v is not None}))
