"""Build small MSF images in memory for the tests."""

from construct import Int32ul

from msf import MSF_MAGIC, blocks_needed


def u32s(values):
    values = list(values)
    return Int32ul[len(values)].build(values)

def pattern(size, seed=0):
    return bytes((i * 7 + seed) & 0xff for i in range(size))


def build_msf(streams, block_size=512, magic=MSF_MAGIC, layout=None, dir_layout=None, free_block_map=1, prefix=b""):
    """Lay out streams (a list of bytes) in an MSF image.

       layout optionally pins the blocks of some streams: {stream index: [block, ...]},
       dir_layout the blocks of the directory itself.
       Everything else is allocated from block 3 upwards, directory last, block map at the end.
    """
    layout = layout or {}
    used = {0, 1, 2}
    for blocks in layout.values():
        used.update(blocks)
    used.update(dir_layout or ())

    def allocate():
        n = 3
        while True:
            if n not in used:
                used.add(n)
                yield n
            n += 1
    free = allocate()

    placement = []
    for i, data in enumerate(streams):
        if i in layout:
            placement.append(list(layout[i]))
        else:
            placement.append([next(free) for _ in range(blocks_needed(len(data), block_size))])

    directory = u32s([len(streams)]) + u32s(len(data) for data in streams)
    directory += b"".join(u32s(blocks) for blocks in placement)
    if dir_layout is not None:
        assert len(dir_layout) == blocks_needed(len(directory), block_size)
        dir_blocks = list(dir_layout)
    else:
        dir_blocks = [next(free) for _ in range(blocks_needed(len(directory), block_size))]
    block_map = next(free)
    num_blocks = max(used) + 1

    image = bytearray(num_blocks * block_size)
    header = magic + u32s([block_size, free_block_map, num_blocks, len(directory), 0, block_map])
    image[:len(header)] = header

    def put(blocks, data):
        for n, block in enumerate(blocks):
            chunk = data[n * block_size:(n + 1) * block_size]
            image[block * block_size:block * block_size + len(chunk)] = chunk

    for blocks, data in zip(placement, streams):
        put(blocks, data)
    put(dir_blocks, directory)
    put([block_map], u32s(dir_blocks))

    return prefix + bytes(image)
