#
# A trusted image builder, shaped after xv6's mkfs, plus fixtures.
#
# Copyright (c) 2026, The xcheck authors.
# SPDX-License-Identifier: BSD-3-Clause
#

import os
import struct

import pytest

import xcheck
from xcheck import (BSIZE, NDIRECT, NINDIRECT, DPB, ROOTINO,
        T_DIR, T_FILE, T_DEV,
        SUPERBLOCK_STRUCT, INODE_STRUCT, DIRENT_STRUCT)


SCRIPTS = os.path.join(os.path.dirname(__file__), '..', 'scripts')

FIELDS = ['type', 'major', 'minor', 'nlink', 'size']


class Mkfs:
    def __init__(self, size=1024, ninodes=200):
        self.layout = xcheck.layout(size, 0, ninodes)
        self.data = bytearray(size*BSIZE)
        SUPERBLOCK_STRUCT.pack_into(self.data, 1*BSIZE,
                size, size - self.layout.data_start, ninodes)
        self.ninodes = ninodes
        self.freeinode = ROOTINO
        self.freeblock = self.layout.data_start
        self.paths = {}

        # everything before the data region is in use
        for block in range(self.layout.data_start):
            self.setbit(block, True)

        self.root = self.mkdir(None, '/')

    def fs(self):
        return xcheck.Xv6fs.fetch(bytes(self.data))

    def write(self, path):
        with open(path, 'wb') as f:
            f.write(self.data)

    def inodeoff(self, inum):
        return ((self.layout.inode_start + inum//xcheck.IPB)*BSIZE
                + (inum % xcheck.IPB)*INODE_STRUCT.size)

    def rinode(self, inum):
        fields = INODE_STRUCT.unpack_from(self.data, self.inodeoff(inum))
        inode = dict(zip(FIELDS, fields))
        inode['addrs'] = list(fields[len(FIELDS):])
        return inode

    def winode(self, inum, inode):
        INODE_STRUCT.pack_into(self.data, self.inodeoff(inum),
                *[inode[k] for k in FIELDS], *inode['addrs'])

    def setbit(self, block, used):
        off = xcheck.bblock(block, self.ninodes)*BSIZE + (block % xcheck.BPB)//8
        if used:
            self.data[off] |= 1 << (block % 8)
        else:
            self.data[off] &= ~(1 << (block % 8)) & 0xff

    def balloc(self):
        block = self.freeblock
        self.freeblock += 1
        self.setbit(block, True)
        return block

    def ialloc(self, type, major=0, minor=0, nlink=1):
        inum = self.freeinode
        self.freeinode += 1
        self.winode(inum, dict(
                type=type, major=major, minor=minor, nlink=nlink, size=0,
                addrs=[0]*(NDIRECT+1)))
        return inum

    def indirectoff(self, inum, i):
        return self.rinode(inum)['addrs'][NDIRECT]*BSIZE + 4*i

    def iappend(self, inum, data):
        inode = self.rinode(inum)
        off = inode['size']
        while data:
            fbn = off // BSIZE
            assert fbn < NDIRECT + NINDIRECT
            if fbn < NDIRECT:
                if not inode['addrs'][fbn]:
                    inode['addrs'][fbn] = self.balloc()
                block = inode['addrs'][fbn]
            else:
                if not inode['addrs'][NDIRECT]:
                    inode['addrs'][NDIRECT] = self.balloc()
                ioff = inode['addrs'][NDIRECT]*BSIZE + 4*(fbn-NDIRECT)
                block, = struct.unpack_from('<I', self.data, ioff)
                if not block:
                    block = self.balloc()
                    struct.pack_into('<I', self.data, ioff, block)

            n = min(len(data), (fbn+1)*BSIZE - off)
            start = block*BSIZE + off % BSIZE
            self.data[start:start+n] = data[:n]
            data = data[n:]
            off += n

        inode['size'] = off
        self.winode(inum, inode)

    def dirlink(self, dir, name, inum):
        self.iappend(dir, DIRENT_STRUCT.pack(inum, name.encode()))

    def direntoff(self, dir, index):
        inode = self.rinode(dir)
        block = inode['addrs'][index // DPB]
        return block*BSIZE + (index % DPB)*DIRENT_STRUCT.size

    def lookup(self, dir, name):
        for index in range(self.rinode(dir)['size'] // DIRENT_STRUCT.size):
            inum, name_ = DIRENT_STRUCT.unpack_from(
                    self.data, self.direntoff(dir, index))
            if inum != 0 and name_.rstrip(b'\0') == name.encode():
                return index
        raise KeyError(name)

    def setdirent(self, dir, index, inum=None, name=None):
        off = self.direntoff(dir, index)
        inum_, name_ = DIRENT_STRUCT.unpack_from(self.data, off)
        DIRENT_STRUCT.pack_into(self.data, off,
                inum if inum is not None else inum_,
                name.encode() if name is not None else name_)

    def unlink(self, dir, name):
        self.setdirent(dir, self.lookup(dir, name), inum=0, name='')

    def _path(self, parent, name):
        if parent is None:
            return '/'
        dir = next(p for p, inum in self.paths.items() if inum == parent)
        return dir.rstrip('/') + '/' + name

    def mkdir(self, parent, name):
        inum = self.ialloc(T_DIR)
        self.dirlink(inum, '.', inum)
        self.dirlink(inum, '..', parent if parent is not None else inum)
        if parent is not None:
            self.dirlink(parent, name, inum)
        self.paths[self._path(parent, name)] = inum
        return inum

    def mkfile(self, parent, name, data=b''):
        inum = self.ialloc(T_FILE)
        self.iappend(inum, data)
        self.dirlink(parent, name, inum)
        self.paths[self._path(parent, name)] = inum
        return inum

    def mknod(self, parent, name, major, minor):
        inum = self.ialloc(T_DEV, major=major, minor=minor)
        self.dirlink(parent, name, inum)
        self.paths[self._path(parent, name)] = inum
        return inum

    def link(self, parent, name, inum):
        self.dirlink(parent, name, inum)
        inode = self.rinode(inum)
        inode['nlink'] += 1
        self.winode(inum, inode)
        self.paths[self._path(parent, name)] = inum


# a small tree touching every kind of inode, and an indirect block
def mkref():
    mkfs = Mkfs()
    d = mkfs.mkdir(mkfs.root, 'd')
    mkfs.mkdir(mkfs.root, 'e')
    mkfs.mkfile(d, 'f2', b'hello\n'*16)
    a = mkfs.mkfile(mkfs.root, 'a.txt', bytes(range(256))*3)
    mkfs.mkfile(mkfs.root, 'big', b'\xaa'*((NDIRECT+3)*BSIZE))
    mkfs.mknod(mkfs.root, 'console', 1, 1)
    mkfs.link(mkfs.root, 'a.lnk', a)
    return mkfs

@pytest.fixture
def mkfs():
    return Mkfs()

@pytest.fixture
def ref():
    return mkref()
